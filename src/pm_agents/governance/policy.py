"""Autonomy policy: tiered resolution of shadow/propose/execute."""

from dataclasses import dataclass

from loguru import logger

from ..state import TenantConfigStore
from .modes import Disposition

AUTONOMY_KEY_PREFIX = "ai.autonomy."
AUTONOMY_DEFAULT_KEY = "ai.autonomy.default"

# Flags carried in the enforcer's modified input, one pair per disposition.
DISPOSITION_FLAGS: dict[Disposition, dict[str, bool]] = {
    Disposition.SHADOW: {"_shadow": True, "_propose": False},
    Disposition.PROPOSE: {"_shadow": False, "_propose": True},
    Disposition.EXECUTE: {"_shadow": False, "_propose": False},
}


@dataclass
class AutonomyDecision:
    """
    Resolved disposition and where it came from.

    ``source`` is the config key that supplied the mode, ``"fallback"`` when
    neither key held a valid mode, or ``"fail-safe"`` when the store failed.
    """

    disposition: Disposition
    source: str

    @property
    def reason(self) -> str:
        descriptions = {
            Disposition.SHADOW: "shadow mode: action is recorded for audit only, never applied",
            Disposition.PROPOSE: "propose mode: action requires human review before it is applied",
            Disposition.EXECUTE: "execute mode: action may be applied without review",
        }
        return f"Autonomy {descriptions[self.disposition]} (source: {self.source})"


class AutonomyResolver:
    """
    Resolve the disposition for a subject (a tool name or a capability).

    Resolution order:
    1. ``ai.autonomy.<subject>`` for the tenant, if it holds a valid mode
    2. ``ai.autonomy.default`` for the tenant, same validation
    3. ``propose``

    Store failures resolve to ``propose`` instead of failing the request.
    Values may be a bare mode string or a ``{"mode": ...}`` object.
    """

    def __init__(self, config_store: TenantConfigStore):
        self.config_store = config_store

    async def resolve(self, tenant_id: str, subject: str) -> AutonomyDecision:
        specific_key = f"{AUTONOMY_KEY_PREFIX}{subject}"
        try:
            for key in (specific_key, AUTONOMY_DEFAULT_KEY):
                raw = await self.config_store.get(tenant_id, key)
                if raw is None:
                    continue
                disposition = Disposition.parse(raw)
                if disposition is None:
                    logger.warning(f"Ignoring invalid autonomy mode {raw!r} at {key} for tenant {tenant_id}")
                    continue
                return AutonomyDecision(disposition=disposition, source=key)
        except Exception as e:
            logger.error(
                f"Autonomy lookup failed for tenant {tenant_id}: {e}, "
                f"using fail-safe default: {Disposition.PROPOSE.value}"
            )
            return AutonomyDecision(disposition=Disposition.PROPOSE, source="fail-safe")

        return AutonomyDecision(disposition=Disposition.PROPOSE, source="fallback")
