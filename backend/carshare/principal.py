"""Actor abstraction passed explicitly into every booking operation."""

from __future__ import annotations

from dataclasses import dataclass

from .core.enums import ActorRole


@dataclass(frozen=True)
class Actor:
    """The user (or system job) performing an operation, and the role it claims."""

    actor_id: str
    role: ActorRole

    @property
    def id(self) -> str:
        return self.actor_id

    @classmethod
    def renter(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.RENTER)

    @classmethod
    def owner(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.OWNER)

    @classmethod
    def support(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.SUPPORT)

    @classmethod
    def system(cls, job_name: str = "scheduler") -> "Actor":
        return cls(actor_id=f"system:{job_name}", role=ActorRole.SYSTEM)
