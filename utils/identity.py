"""Caller identity as resolved by the external auth layer"""

from dataclasses import dataclass

from models import ParticipantRole


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: ParticipantRole

    @property
    def is_admin(self) -> bool:
        return self.role == ParticipantRole.ADMIN

    @classmethod
    def freelancer(cls, user_id: str) -> "Actor":
        return cls(user_id, ParticipantRole.FREELANCER)

    @classmethod
    def hiring(cls, user_id: str) -> "Actor":
        return cls(user_id, ParticipantRole.HIRING)

    @classmethod
    def admin(cls, user_id: str) -> "Actor":
        return cls(user_id, ParticipantRole.ADMIN)
