from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from circles.core.roles import RoleDefinition


class RoleIn(BaseModel):
    handle: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=100)
    access_level: int = Field(ge=0)
    read_only: bool = False
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("handle")
    @classmethod
    def normalize_handle(cls, v: str) -> str:
        return v.strip().lower()

    def to_definition(self) -> RoleDefinition:
        return RoleDefinition(
            handle=self.handle,
            display_name=self.display_name.strip(),
            access_level=self.access_level,
            read_only=self.read_only,
            description=self.description,
        )


class RoleCatalogUpdate(BaseModel):
    roles: List[RoleIn] = Field(min_length=1)


class AccessRulesUpdate(BaseModel):
    # {module: {feature: [role handle, ...]}}
    rules: Dict[str, Dict[str, List[str]]]


class ModulesUpdate(BaseModel):
    modules: List[str]
