"""Database collaborator used by the pm-db and pgvector servers."""

import asyncio
import copy
import math
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..audit import AuditLogStore


class PMDatabase(ABC):
    """
    Tenant-scoped row access owned by the database layer.

    Every method takes the tenant id explicitly; rows of other tenants are
    invisible. Mutations return the row as written (or removed).
    """

    @abstractmethod
    async def query(
        self, tenant_id: str, table: str, filters: Optional[dict] = None, limit: int = 50
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_by_id(self, tenant_id: str, table: str, row_id: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def insert(
        self, tenant_id: str, table: str, data: dict[str, Any], actor_id: Optional[str] = None
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def update(
        self,
        tenant_id: str,
        table: str,
        row_id: str,
        data: dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def delete(
        self, tenant_id: str, table: str, row_id: str, actor_id: Optional[str] = None
    ) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def vector_search(
        self,
        tenant_id: str,
        embedding: list[float],
        top_k: int = 10,
        entity_type: Optional[str] = None,
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def text_search(
        self,
        tenant_id: str,
        text: str,
        limit: int = 10,
        entity_type: Optional[str] = None,
    ) -> list[dict[str, Any]]: ...


def _cosine(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryPMDatabase(PMDatabase):
    """
    Process-local database for tests and single-node demos.

    AI mutations are written to the audit store with ``actor_type="ai"`` and
    no action id, the way the real mutation path records them; the
    traceability hook links them afterwards.
    """

    def __init__(self, audit_store: Optional[AuditLogStore] = None):
        self._tables: dict[tuple[str, str], dict[str, dict[str, Any]]] = {}
        self._audit_store = audit_store
        self._lock = asyncio.Lock()
        self.write_count = 0

    def _table(self, tenant_id: str, table: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault((tenant_id, table), {})

    async def _audit(
        self, tenant_id: str, table: str, row_id: str, action: str, actor_id: Optional[str], diff: dict
    ) -> None:
        if self._audit_store is None:
            return
        await self._audit_store.append(
            tenant_id=tenant_id,
            entity_type=table,
            entity_id=row_id,
            action=action,
            actor_id=actor_id,
            actor_type="ai",
            diff=diff,
        )

    async def query(
        self, tenant_id: str, table: str, filters: Optional[dict] = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        filters = filters or {}
        rows = [
            copy.deepcopy(row)
            for row in self._table(tenant_id, table).values()
            if all(row.get(k) == v for k, v in filters.items())
        ]
        return rows[: max(limit, 0)]

    async def get_by_id(self, tenant_id: str, table: str, row_id: str) -> Optional[dict[str, Any]]:
        row = self._table(tenant_id, table).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def insert(
        self, tenant_id: str, table: str, data: dict[str, Any], actor_id: Optional[str] = None
    ) -> dict[str, Any]:
        async with self._lock:
            row_id = str(data.get("id") or uuid.uuid4())
            rows = self._table(tenant_id, table)
            if row_id in rows:
                raise ValueError(f"{table} row {row_id} already exists")
            row = {**copy.deepcopy(data), "id": row_id, "tenant_id": tenant_id}
            rows[row_id] = row
            self.write_count += 1
        await self._audit(tenant_id, table, row_id, "created", actor_id, {"after": row})
        return copy.deepcopy(row)

    async def update(
        self,
        tenant_id: str,
        table: str,
        row_id: str,
        data: dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        async with self._lock:
            rows = self._table(tenant_id, table)
            before = rows.get(row_id)
            if before is None:
                return None
            changes = {k: v for k, v in data.items() if k not in {"id", "tenant_id"}}
            after = {**before, **copy.deepcopy(changes)}
            rows[row_id] = after
            self.write_count += 1
        await self._audit(
            tenant_id, table, row_id, "updated", actor_id, {"before": before, "after": after}
        )
        return copy.deepcopy(after)

    async def delete(
        self, tenant_id: str, table: str, row_id: str, actor_id: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        async with self._lock:
            removed = self._table(tenant_id, table).pop(row_id, None)
            if removed is not None:
                self.write_count += 1
        if removed is not None:
            await self._audit(tenant_id, table, row_id, "deleted", actor_id, {"before": removed})
        return removed

    async def vector_search(
        self,
        tenant_id: str,
        embedding: list[float],
        top_k: int = 10,
        entity_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        scored = []
        for row in self._table(tenant_id, "embeddings").values():
            if entity_type and row.get("entity_type") != entity_type:
                continue
            vector = row.get("embedding") or []
            result = {k: v for k, v in row.items() if k != "embedding"}
            result["similarity"] = _cosine(embedding, vector)
            scored.append(result)
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:top_k]

    async def text_search(
        self,
        tenant_id: str,
        text: str,
        limit: int = 10,
        entity_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        terms = {t for t in text.lower().split() if t}
        scored = []
        for row in self._table(tenant_id, "embeddings").values():
            if entity_type and row.get("entity_type") != entity_type:
                continue
            words = set(str(row.get("content", "")).lower().split())
            if not terms or not words:
                continue
            overlap = len(terms & words) / len(terms)
            if overlap == 0:
                continue
            result = {k: v for k, v in row.items() if k != "embedding"}
            result["relevance"] = overlap
            scored.append(result)
        scored.sort(key=lambda r: r["relevance"], reverse=True)
        return scored[:limit]
