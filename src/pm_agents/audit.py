"""Audit trail: JSON Lines hook-decision log and the entity audit-log store."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import Config

MAX_CONTENT_LENGTH = 1000  # Truncate large content to prevent log bloat


class AuditEvent(str, Enum):
    """Event types written to the hook log."""

    HOOK_DECISION = "hook_decision"
    PERMISSION_DECISION = "permission_decision"
    ACTION_TRANSITION = "action_transition"
    REVIEW = "review"
    ROLLBACK = "rollback"


class HookAuditLog:
    """
    Append-only JSON Lines log of hook and permission decisions.

    This is the system of record for why a tool call was allowed or denied,
    independent of the audit rows written for the mutation itself.

    Features:
    - One JSON object per line, ISO 8601 UTC timestamps
    - Automatic content truncation
    - Size-based rotation with timestamped backups
    - Retention cleanup based on HOOK_LOG_RETENTION_DAYS
    """

    def __init__(
        self,
        log_path: Optional[str] = None,
        retention_days: int = Config.HOOK_LOG_RETENTION_DAYS,
        rotation_bytes: int = Config.HOOK_LOG_ROTATION_BYTES,
    ):
        self.log_path = Path(log_path or Config.HOOK_LOG_PATH)
        self.retention_days = retention_days
        self.rotation_bytes = rotation_bytes
        self._last_cleanup: Optional[datetime] = None
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._cleanup_old_logs()

    def _rotate_if_needed(self) -> None:
        """Rotate the log if it exceeds the configured size."""
        if not self.log_path.exists():
            return
        if self.log_path.stat().st_size < self.rotation_bytes:
            return

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        rotated_path = self.log_path.with_name(f"{self.log_path.name}.{timestamp}")
        counter = 1
        while rotated_path.exists():
            rotated_path = self.log_path.with_name(
                f"{self.log_path.name}.{timestamp}.{counter}"
            )
            counter += 1
        self.log_path.replace(rotated_path)

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention window."""
        if self.retention_days <= 0:
            return
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        for path in self.log_path.parent.glob(f"{self.log_path.name}*"):
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
            if modified < cutoff:
                path.unlink()
        self._last_cleanup = datetime.now(timezone.utc)

    def _maybe_cleanup(self) -> None:
        if self.retention_days <= 0:
            return
        now = datetime.now(timezone.utc)
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(days=1):
            self._cleanup_old_logs()

    @staticmethod
    def _truncate_content(value: Any, max_length: int = MAX_CONTENT_LENGTH) -> Any:
        if isinstance(value, str) and len(value) > max_length:
            return value[:max_length] + f"... [truncated, {len(value)} total chars]"
        elif isinstance(value, dict):
            return {k: HookAuditLog._truncate_content(v, max_length) for k, v in value.items()}
        elif isinstance(value, list):
            return [HookAuditLog._truncate_content(item, max_length) for item in value]
        return value

    def log(self, event: AuditEvent, tenant_id: Optional[str] = None, **kwargs) -> dict:
        """Write one record and return it."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event.value,
            "tenant_id": tenant_id,
            **self._truncate_content(kwargs),
        }
        json_line = json.dumps(record, ensure_ascii=False, default=str)

        self._maybe_cleanup()
        self._rotate_if_needed()

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json_line + "\n")
        return record

    def log_hook_decision(
        self,
        tenant_id: str,
        hook_name: str,
        phase: str,
        decision: str,
        reason: Optional[str],
        ai_action_id: Optional[str],
        tool_name: Optional[str] = None,
    ) -> dict:
        return self.log(
            AuditEvent.HOOK_DECISION,
            tenant_id=tenant_id,
            hook_name=hook_name,
            phase=phase,
            decision=decision,
            reason=reason,
            ai_action_id=ai_action_id,
            tool_name=tool_name,
        )

    def log_permission_decision(
        self,
        tenant_id: str,
        ai_action_id: Optional[str],
        tool_name: str,
        decision: str,
        step: str,
        reason: str,
        is_mutation: bool,
    ) -> dict:
        return self.log(
            AuditEvent.PERMISSION_DECISION,
            tenant_id=tenant_id,
            ai_action_id=ai_action_id,
            tool_name=tool_name,
            decision=decision,
            step=step,
            reason=reason,
            is_mutation=is_mutation,
        )

    def log_transition(
        self,
        tenant_id: str,
        ai_action_id: str,
        from_status: Optional[str],
        to_status: str,
        error_message: Optional[str] = None,
    ) -> dict:
        return self.log(
            AuditEvent.ACTION_TRANSITION,
            tenant_id=tenant_id,
            ai_action_id=ai_action_id,
            from_status=from_status,
            to_status=to_status,
            error_message=error_message,
        )


# ============================================================================
# Entity audit log (mutation rows written by humans or the AI)
# ============================================================================


@dataclass
class AuditLogEntry:
    """One audit-log row for an entity mutation."""

    tenant_id: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: Optional[str]
    actor_type: str  # "human" | "ai"
    diff: Optional[dict] = None
    ai_action_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "diff": self.diff,
            "ai_action_id": self.ai_action_id,
            "created_at": self.created_at.isoformat(),
        }


class AuditLogStore(ABC):
    """Append-only entity audit log owned by the database layer."""

    @abstractmethod
    async def append(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        actor_type: str,
        diff: Optional[dict] = None,
        ai_action_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """Append one row."""

    @abstractmethod
    async def link_unstamped(self, tenant_id: str, ai_action_id: str) -> int:
        """
        Stamp every ``actor_type="ai"`` row of the tenant that has no action id.

        Returns the number of rows stamped; re-running returns 0.
        """


class InMemoryAuditLogStore(AuditLogStore):
    def __init__(self):
        self.entries: list[AuditLogEntry] = []
        self._lock = asyncio.Lock()

    async def append(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        actor_type: str,
        diff: Optional[dict] = None,
        ai_action_id: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            actor_type=actor_type,
            diff=diff,
            ai_action_id=ai_action_id,
        )
        async with self._lock:
            self.entries.append(entry)
        return entry

    async def link_unstamped(self, tenant_id: str, ai_action_id: str) -> int:
        stamped = 0
        async with self._lock:
            for entry in self.entries:
                if (
                    entry.tenant_id == tenant_id
                    and entry.actor_type == "ai"
                    and entry.ai_action_id is None
                ):
                    entry.ai_action_id = ai_action_id
                    stamped += 1
        return stamped

    def for_tenant(self, tenant_id: str) -> list[AuditLogEntry]:
        return [e for e in self.entries if e.tenant_id == tenant_id]
