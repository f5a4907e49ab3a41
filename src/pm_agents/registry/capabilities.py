"""Capability registry: static per-capability agent profiles loaded from YAML."""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from ..config import Config
from ..governance.modes import PermissionMode
from ..governance.permissions import ToolRules
from ..state import TenantConfigStore

AGENT_OVERRIDE_KEY_PREFIX = "ai.agent."


class Capability(str, Enum):
    WBS_GENERATOR = "wbs_generator"
    WHATS_NEXT = "whats_next"
    NL_QUERY = "nl_query"
    SUMMARY_WRITER = "summary_writer"
    RISK_PREDICTOR = "risk_predictor"
    AI_PM_AGENT = "ai_pm_agent"
    SCOPE_DETECTOR = "scope_detector"
    WRITING_ASSISTANT = "writing_assistant"
    SOW_GENERATOR = "sow_generator"
    LEARNING_AGENT = "learning_agent"

    @classmethod
    def parse(cls, value: Any) -> Optional["Capability"]:
        try:
            return cls(value)
        except ValueError:
            return None


class ModelTier(str, Enum):
    OPUS = "opus"
    SONNET = "sonnet"


@dataclass
class CapabilityConfig:
    """
    Agent profile for one capability.

    Invariants:
    - read_only capabilities never see or run a mutating tool
    - max_turns > 0
    - 0 <= confidence_threshold <= 1
    """

    capability: Capability
    model: ModelTier
    permission_mode: PermissionMode
    max_turns: int
    read_only: bool
    allowed_mcp_servers: list[str]
    system_prompt: str = ""
    prompt: str = "{input}"
    output_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    confidence_threshold: float = Config.AI_CONFIDENCE_THRESHOLD
    enabled: bool = True
    plan_strategy: Optional[str] = None
    tool_rules: Optional[ToolRules] = None

    def validate_invariants(self) -> bool:
        if self.max_turns <= 0:
            raise ValueError(f"{self.capability.value}: max_turns must be > 0")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ValueError(f"{self.capability.value}: confidence_threshold must be within [0, 1]")
        if self.read_only and self.permission_mode == PermissionMode.BYPASS_PERMISSIONS:
            raise ValueError(f"{self.capability.value}: read-only agents cannot bypass permissions")
        return True

    @property
    def model_id(self) -> str:
        return Config.MODEL_IDS[self.model.value]

    def render_prompt(self, input_text: str) -> str:
        return self.prompt.replace("{input}", input_text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability": self.capability.value,
            "model": self.model.value,
            "permission_mode": self.permission_mode.value,
            "max_turns": self.max_turns,
            "read_only": self.read_only,
            "allowed_mcp_servers": list(self.allowed_mcp_servers),
            "confidence_threshold": self.confidence_threshold,
            "enabled": self.enabled,
        }


class CapabilityRegistry:
    """Static table of capability profiles, with per-tenant overrides."""

    def __init__(self, version: int = 0):
        self.version = version
        self._configs: dict[Capability, CapabilityConfig] = {}

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "CapabilityRegistry":
        """
        Load the registry from a YAML file.

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If an entry is malformed or a capability is unknown
        """
        yaml_file = Path(yaml_path)
        if not yaml_file.exists():
            raise FileNotFoundError(f"Capability registry YAML not found: {yaml_path}")

        with open(yaml_file) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Invalid YAML structure: expected dict, got {type(data).__name__}")
        entries = data.get("capabilities", [])
        if not isinstance(entries, list):
            raise ValueError("'capabilities' must be a list")

        defaults = data.get("defaults", {}) or {}
        registry = cls(version=int(data.get("version", 0)))
        for entry in entries:
            merged = {**defaults, **entry}
            capability = Capability.parse(merged.get("capability"))
            if capability is None:
                raise ValueError(f"Unknown capability in registry: {merged.get('capability')}")
            config = CapabilityConfig(
                capability=capability,
                model=ModelTier(merged["model"]),
                permission_mode=PermissionMode(merged["permission_mode"]),
                max_turns=int(merged["max_turns"]),
                read_only=bool(merged["read_only"]),
                allowed_mcp_servers=list(merged.get("allowed_mcp_servers", [])),
                system_prompt=(merged.get("system_prompt") or "").strip(),
                prompt=merged.get("prompt") or "{input}",
                output_schema=merged.get("output_schema") or {"type": "object"},
                confidence_threshold=float(merged.get("confidence_threshold", Config.AI_CONFIDENCE_THRESHOLD)),
                enabled=bool(merged.get("enabled", True)),
                plan_strategy=merged.get("plan_strategy"),
            )
            registry.add(config)

        missing = set(Capability) - set(registry._configs)
        if missing:
            logger.warning(
                f"Capability registry is missing: {sorted(c.value for c in missing)}"
            )
        logger.debug(f"Loaded {len(registry._configs)} capabilities (version {registry.version})")
        return registry

    def add(self, config: CapabilityConfig) -> None:
        config.validate_invariants()
        self._configs[config.capability] = config

    def get(self, capability) -> Optional[CapabilityConfig]:
        parsed = capability if isinstance(capability, Capability) else Capability.parse(capability)
        if parsed is None:
            return None
        return self._configs.get(parsed)

    def all(self) -> list[CapabilityConfig]:
        return list(self._configs.values())

    async def effective_config(
        self,
        capability: Capability,
        tenant_id: str,
        config_store: TenantConfigStore,
    ) -> Optional[CapabilityConfig]:
        """
        Apply the tenant's ``ai.agent.<capability>`` override to the static profile.

        Overrides may disable the capability, change permission mode or max
        turns, and attach per-tool allow/deny rules. ``read_only`` and the
        allowed servers are not overridable.
        """
        base = self.get(capability)
        if base is None:
            return None
        try:
            override = await config_store.get(tenant_id, f"{AGENT_OVERRIDE_KEY_PREFIX}{capability.value}")
        except Exception as e:
            logger.error(f"Agent override lookup failed for {tenant_id}/{capability.value}: {e}")
            override = None
        if not isinstance(override, dict):
            return base

        updates: dict[str, Any] = {}
        if "enabled" in override:
            updates["enabled"] = bool(override["enabled"])
        if "permission_mode" in override:
            try:
                updates["permission_mode"] = PermissionMode(override["permission_mode"])
            except ValueError:
                logger.warning(f"Ignoring invalid permission_mode override: {override['permission_mode']}")
        if "max_turns" in override and int(override["max_turns"]) > 0:
            updates["max_turns"] = int(override["max_turns"])
        rules = ToolRules.from_dict(override.get("tool_rules"))
        if rules is not None:
            updates["tool_rules"] = rules

        config = replace(base, **updates)
        if config.read_only and config.permission_mode == PermissionMode.BYPASS_PERMISSIONS:
            logger.warning(f"Ignoring bypassPermissions override for read-only {capability.value}")
            config = replace(config, permission_mode=base.permission_mode)
        return config


capability_registry = CapabilityRegistry.from_yaml(Config.CAPABILITIES_YAML_PATH)
