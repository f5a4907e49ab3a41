"""AI session rows."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass
class AISession:
    """
    Conversation state for one capability, per tenant and user.

    ``turn_count`` only grows; ``parent_session_id`` is set on forks and
    always names a different session.
    """

    tenant_id: str
    user_id: str
    capability: str
    expires_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    parent_session_id: Optional[str] = None
    turn_count: int = 0
    state: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: datetime) -> bool:
        return self.status == SessionStatus.EXPIRED or self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "capability": self.capability,
            "parent_session_id": self.parent_session_id,
            "turn_count": self.turn_count,
            "state": self.state,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AISession":
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            capability=data["capability"],
            parent_session_id=data.get("parent_session_id"),
            turn_count=int(data.get("turn_count", 0)),
            state=dict(data.get("state") or {}),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
