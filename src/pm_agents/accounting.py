"""Token cost accounting per tenant."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .config import Config


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost for a completion, using per-million-token pricing."""
    model_key = model.split("/", 1)[-1]
    rate = Config.MODEL_PRICING.get(model_key, Config.DEFAULT_MODEL_PRICING)
    return (input_tokens / 1_000_000) * rate["input"] + (
        output_tokens / 1_000_000
    ) * rate["output"]


@dataclass
class CostRecord:
    tenant_id: str
    ai_action_id: Optional[str]
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "ai_action_id": self.ai_action_id,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CostAggregate:
    """Tenant spend over a calendar period, used for budget threshold checks."""

    tenant_id: str
    period: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    calls: int = 0


class CostLogStore(ABC):
    @abstractmethod
    async def record(self, record: CostRecord) -> None:
        """Persist one cost-log row."""

    @abstractmethod
    async def daily_total(self, tenant_id: str, day: datetime) -> CostAggregate:
        """Aggregate for the UTC calendar day containing ``day``."""

    @abstractmethod
    async def monthly_total(self, tenant_id: str, month: datetime) -> CostAggregate:
        """Aggregate for the UTC calendar month containing ``month``."""


class InMemoryCostLogStore(CostLogStore):
    def __init__(self):
        self.records: list[CostRecord] = []
        self._lock = asyncio.Lock()

    async def record(self, record: CostRecord) -> None:
        async with self._lock:
            self.records.append(record)

    def _aggregate(self, tenant_id: str, period: str, match) -> CostAggregate:
        total = CostAggregate(tenant_id=tenant_id, period=period)
        for rec in self.records:
            if rec.tenant_id != tenant_id or not match(rec.created_at):
                continue
            total.input_tokens += rec.input_tokens
            total.output_tokens += rec.output_tokens
            total.cost_usd += rec.cost_usd
            total.calls += 1
        return total

    async def daily_total(self, tenant_id: str, day: datetime) -> CostAggregate:
        target = day.astimezone(timezone.utc).date()
        return self._aggregate(
            tenant_id,
            target.isoformat(),
            lambda ts: ts.astimezone(timezone.utc).date() == target,
        )

    async def monthly_total(self, tenant_id: str, month: datetime) -> CostAggregate:
        month = month.astimezone(timezone.utc)
        return self._aggregate(
            tenant_id,
            f"{month.year:04d}-{month.month:02d}",
            lambda ts: (ts.astimezone(timezone.utc).year, ts.astimezone(timezone.utc).month)
            == (month.year, month.month),
        )
