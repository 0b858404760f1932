# Import models here so Alembic can discover metadata.
from circles.models.user import User  # noqa: F401

from circles.models.circle_role import CircleRole  # noqa: F401
from circles.models.circle import Circle  # noqa: F401
from circles.models.circle_member import CircleMember, CircleMemberRole  # noqa: F401
from circles.models.membership_request import MembershipRequest  # noqa: F401
