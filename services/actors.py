"""Actor identities attached to every mutation and audit entry"""

from dataclasses import dataclass
from typing import Optional

from models import ActorType, AdminRole


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation"""
    actor_type: str
    actor_id: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def system(cls, job_name: Optional[str] = None) -> "Actor":
        return cls(actor_type=ActorType.SYSTEM.value, actor_id=job_name)

    @classmethod
    def admin(cls, admin_id: str, role: str = AdminRole.ADMIN.value) -> "Actor":
        actor_type = ActorType.SALES_REP.value if role == AdminRole.SALES_REP.value else ActorType.ADMIN.value
        return cls(actor_type=actor_type, actor_id=admin_id, role=role)

    @property
    def is_admin(self) -> bool:
        return self.role in (AdminRole.ADMIN.value, AdminRole.SUPER_ADMIN.value)

    @property
    def is_super_admin(self) -> bool:
        return self.role == AdminRole.SUPER_ADMIN.value

    @property
    def label(self) -> str:
        return f"{self.actor_type}:{self.actor_id or '-'}"


SYSTEM_ACTOR = Actor.system()
