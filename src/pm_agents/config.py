"""Centralized configuration for the AI action pipeline."""

import os
from pathlib import Path


class Config:
    """
    Pipeline configuration with environment variable overrides.

    All configuration values are centralized here with sensible defaults.
    Values can be overridden via environment variables.
    """

    @staticmethod
    def _parse_port(port_str: str) -> int:
        """Parse and validate port number from string."""
        try:
            port = int(port_str)
            if not (1 <= port <= 65535):
                raise ValueError(f"Port must be 1-65535, got {port}")
            return port
        except ValueError as e:
            raise ValueError(f"Invalid PORT environment variable: {e}")

    # ========================================================================
    # Server Configuration
    # ========================================================================
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = _parse_port.__func__(os.getenv("PORT", "8002"))
    LOG_FILE: str = os.getenv("PM_AGENTS_LOG_FILE", "pm_agents.log")

    # ========================================================================
    # Redis Configuration
    # ========================================================================
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "100"))
    REDIS_SOCKET_CONNECT_TIMEOUT: float = float(
        os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "2")
    )
    REDIS_SOCKET_TIMEOUT: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "2"))
    REDIS_CONNECT_RETRIES: int = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
    REDIS_CONNECT_RETRY_DELAY: float = float(os.getenv("REDIS_CONNECT_RETRY_DELAY", "0.2"))
    REDIS_CONNECT_RETRY_MAX_DELAY: float = float(
        os.getenv("REDIS_CONNECT_RETRY_MAX_DELAY", "2")
    )
    # "memory" keeps every store in-process; "redis" shares rate windows,
    # sessions and tenant config across workers.
    STORE_BACKEND: str = os.getenv("PM_AGENTS_STORE_BACKEND", "memory")

    # ========================================================================
    # Hook Log (audit trail for hook and permission decisions)
    # ========================================================================
    HOOK_LOG_PATH: str = os.getenv("HOOK_LOG_PATH", "./hook_log.jsonl")
    HOOK_LOG_RETENTION_DAYS: int = int(os.getenv("HOOK_LOG_RETENTION_DAYS", "90"))
    HOOK_LOG_ROTATION_BYTES: int = int(
        os.getenv("HOOK_LOG_ROTATION_BYTES", str(10 * 1024 * 1024))
    )

    # ========================================================================
    # Rate Limiting
    # ========================================================================
    RATE_LIMIT_WINDOW_MS: int = int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000"))
    RATE_LIMIT_MAX_CALLS: int = int(os.getenv("RATE_LIMIT_MAX_CALLS", "100"))

    # ========================================================================
    # Sessions
    # ========================================================================
    SESSION_RETENTION_DAYS: int = int(os.getenv("SESSION_RETENTION_DAYS", "30"))

    # ========================================================================
    # Orchestrator
    # ========================================================================
    AI_CONFIDENCE_THRESHOLD: float = float(os.getenv("AI_CONFIDENCE_THRESHOLD", "0.6"))
    MODEL_TIMEOUT_SECONDS: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "120"))
    MAX_CONTEXT_TOKENS: int = int(os.getenv("MAX_CONTEXT_TOKENS", "8000"))
    MODEL_MAX_OUTPUT_TOKENS: int = int(os.getenv("MODEL_MAX_OUTPUT_TOKENS", "4096"))
    TENANT_CONFIG_CACHE_TTL: float = float(os.getenv("TENANT_CONFIG_CACHE_TTL", "30"))
    MAX_NUDGES_PER_TASK_PER_DAY: int = int(os.getenv("MAX_NUDGES_PER_TASK_PER_DAY", "2"))
    CAPABILITIES_YAML_PATH: str = os.getenv(
        "CAPABILITIES_YAML_PATH",
        str(Path(__file__).parent / "registry" / "capabilities.yaml"),
    )

    # Model tier -> litellm model id
    MODEL_IDS: dict[str, str] = {
        "opus": os.getenv("PM_AGENTS_OPUS_MODEL", "anthropic/claude-opus-4-20250514"),
        "sonnet": os.getenv("PM_AGENTS_SONNET_MODEL", "anthropic/claude-sonnet-4-20250514"),
    }

    # USD per million tokens
    MODEL_PRICING: dict[str, dict[str, float]] = {
        "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
        "claude-opus-4-20250514": {"input": 15.0, "output": 75.0},
    }
    DEFAULT_MODEL_PRICING: dict[str, float] = {"input": 3.0, "output": 15.0}

    # Without a key the orchestrator serves canned outputs
    ENABLE_LIVE_MODEL: bool = bool(os.getenv("ANTHROPIC_API_KEY"))

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        if cls.RATE_LIMIT_WINDOW_MS <= 0:
            errors.append(f"RATE_LIMIT_WINDOW_MS must be > 0, got {cls.RATE_LIMIT_WINDOW_MS}")
        if cls.RATE_LIMIT_MAX_CALLS <= 0:
            errors.append(f"RATE_LIMIT_MAX_CALLS must be > 0, got {cls.RATE_LIMIT_MAX_CALLS}")
        if cls.SESSION_RETENTION_DAYS <= 0:
            errors.append(
                f"SESSION_RETENTION_DAYS must be > 0, got {cls.SESSION_RETENTION_DAYS}"
            )
        if not (0.0 <= cls.AI_CONFIDENCE_THRESHOLD <= 1.0):
            errors.append(
                "AI_CONFIDENCE_THRESHOLD must be within [0, 1], "
                f"got {cls.AI_CONFIDENCE_THRESHOLD}"
            )
        if cls.MODEL_TIMEOUT_SECONDS <= 0:
            errors.append(f"MODEL_TIMEOUT_SECONDS must be > 0, got {cls.MODEL_TIMEOUT_SECONDS}")
        if cls.MAX_CONTEXT_TOKENS <= 0:
            errors.append(f"MAX_CONTEXT_TOKENS must be > 0, got {cls.MAX_CONTEXT_TOKENS}")
        if cls.TENANT_CONFIG_CACHE_TTL < 0:
            errors.append(
                f"TENANT_CONFIG_CACHE_TTL must be >= 0, got {cls.TENANT_CONFIG_CACHE_TTL}"
            )
        if cls.STORE_BACKEND not in {"memory", "redis"}:
            errors.append(f"STORE_BACKEND must be 'memory' or 'redis', got {cls.STORE_BACKEND}")

        # Validate Redis settings
        if cls.REDIS_MAX_CONNECTIONS <= 0:
            errors.append(
                f"REDIS_MAX_CONNECTIONS must be > 0, got {cls.REDIS_MAX_CONNECTIONS}"
            )
        if cls.REDIS_SOCKET_CONNECT_TIMEOUT <= 0:
            errors.append(
                "REDIS_SOCKET_CONNECT_TIMEOUT must be > 0, "
                f"got {cls.REDIS_SOCKET_CONNECT_TIMEOUT}"
            )
        if cls.REDIS_CONNECT_RETRIES <= 0:
            errors.append(
                f"REDIS_CONNECT_RETRIES must be > 0, got {cls.REDIS_CONNECT_RETRIES}"
            )

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
