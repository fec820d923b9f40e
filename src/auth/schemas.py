from pydantic import BaseModel
from enum import Enum

class ActorRole(str, Enum):
    """Roles that can act on bookings"""
    EV_OWNER = "ev_owner"
    STATION_OPERATOR = "station_operator"
    BACKOFFICE = "backoffice"
    SYSTEM = "system"

PRIVILEGED_ROLES = frozenset({
    ActorRole.STATION_OPERATOR,
    ActorRole.BACKOFFICE,
    ActorRole.SYSTEM,
})

class Actor(BaseModel):
    """The party performing a lifecycle action.

    Passed explicitly into every service call; the services never look the
    role up from a session.
    """
    id: str
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    def owns(self, user_id: str) -> bool:
        return self.id == user_id

    class Config:
        frozen = True
