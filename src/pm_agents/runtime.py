"""Wiring: stores, hooks, servers and services assembled into one runtime."""

from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger
from redis import asyncio as aioredis

from .accounting import CostLogStore, InMemoryCostLogStore
from .actions.store import ActionStore, InMemoryActionStore
from .audit import AuditLogStore, HookAuditLog, InMemoryAuditLogStore
from .config import Config
from .governance.policy import AutonomyResolver
from .hooks import (
    AuditWriter,
    AutonomyEnforcer,
    CostTracker,
    HookManager,
    NotificationHook,
    RateLimiter,
    TenantIsolator,
    Traceability,
)
from .llm.gateway import ModelClient, build_model_client
from .orchestrator import (
    AIOrchestrator,
    ContextAssembler,
    ReviewService,
    TextSearchRetriever,
)
from .orchestrator.context import TokenCounter
from .ratelimit import FixedWindowLimiter, InMemoryRateLimitStore, RateLimitStore, RedisRateLimitStore
from .registry.capabilities import CapabilityRegistry, capability_registry
from .registry.mcp import McpRegistry
from .servers import EventBus, InMemoryPMDatabase, build_mcp_registry
from .sessions import InMemorySessionStore, RedisSessionStore, SessionService, SessionStore
from .state import (
    CachedTenantConfigStore,
    InMemoryTenantConfigStore,
    RedisTenantConfigStore,
    TenantConfigStore,
)
from .tooling.invocation import ToolGateway


@dataclass
class Runtime:
    config_store: TenantConfigStore
    rate_limit_store: RateLimitStore
    limiter: FixedWindowLimiter
    actions: ActionStore
    sessions: SessionService
    audit_store: AuditLogStore
    cost_store: CostLogStore
    hook_log: HookAuditLog
    events: EventBus
    db: Any
    mcp_registry: McpRegistry
    hook_manager: HookManager
    gateway: ToolGateway
    orchestrator: AIOrchestrator
    review: ReviewService


def build_runtime(
    backend: str = Config.STORE_BACKEND,
    hook_log_path: Optional[str] = None,
    model_client: Optional[ModelClient] = None,
    token_counter: Optional[TokenCounter] = None,
    capabilities: Optional[CapabilityRegistry] = None,
    config_store: Optional[TenantConfigStore] = None,
    redis_client: Optional[aioredis.Redis] = None,
    db: Any = None,
) -> Runtime:
    """
    Assemble the pipeline.

    ``backend="redis"`` shares tenant config (behind a TTL cache), rate
    windows and sessions through Redis; actions, audit rows and cost logs
    stay in process.
    """
    if backend == "redis":
        config_store = config_store or CachedTenantConfigStore(RedisTenantConfigStore(redis_client))
        rate_limit_store: RateLimitStore = RedisRateLimitStore(redis_client)
        session_store: SessionStore = RedisSessionStore(redis_client)
    else:
        config_store = config_store or InMemoryTenantConfigStore()
        rate_limit_store = InMemoryRateLimitStore()
        session_store = InMemorySessionStore()

    audit_store = InMemoryAuditLogStore()
    cost_store = InMemoryCostLogStore()
    hook_log = HookAuditLog(hook_log_path)
    events = EventBus()
    db = db if db is not None else InMemoryPMDatabase(audit_store=audit_store)
    mcp_registry = build_mcp_registry(events)
    limiter = FixedWindowLimiter(rate_limit_store)
    audit_writer = AuditWriter(hook_log)

    hook_manager = HookManager(
        pre_hooks=[
            TenantIsolator(),
            RateLimiter(limiter),
            AutonomyEnforcer(AutonomyResolver(config_store)),
        ],
        post_hooks=[
            CostTracker(cost_store),
            Traceability(audit_store),
            NotificationHook(events.publish),
            audit_writer,
        ],
        audit_writer=audit_writer,
    )
    gateway = ToolGateway(mcp_registry, hook_manager, hook_log)
    sessions = SessionService(session_store)
    actions = InMemoryActionStore()

    orchestrator = AIOrchestrator(
        capabilities=capabilities or capability_registry,
        config_store=config_store,
        actions=actions,
        sessions=sessions,
        gateway=gateway,
        model_client=model_client or build_model_client(),
        context_assembler=ContextAssembler(token_counter=token_counter, retriever=TextSearchRetriever()),
        hook_log=hook_log,
        db=db,
        events=events,
    )
    logger.debug(f"Runtime assembled with {backend} backend")

    return Runtime(
        config_store=config_store,
        rate_limit_store=rate_limit_store,
        limiter=limiter,
        actions=actions,
        sessions=sessions,
        audit_store=audit_store,
        cost_store=cost_store,
        hook_log=hook_log,
        events=events,
        db=db,
        mcp_registry=mcp_registry,
        hook_manager=hook_manager,
        gateway=gateway,
        orchestrator=orchestrator,
        review=ReviewService(orchestrator),
    )
