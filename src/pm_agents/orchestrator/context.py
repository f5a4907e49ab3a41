"""Context assembly: prompt, prior session state and retrieved records within a token budget."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import tiktoken
from loguru import logger

from ..config import Config
from ..errors import StageFailure
from ..registry.capabilities import CapabilityConfig

TokenCounter = Callable[[str], int]


class TiktokenCounter:
    """
    Token counter on the cl100k_base encoding.

    The encoding is loaded on first use.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoder = None

    def __call__(self, text: str) -> int:
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return len(self._encoder.encode(text))


@dataclass
class ContextItem:
    source: str
    text: str


class ContextRetriever(ABC):
    """Supplies related records for a request, most relevant first."""

    @abstractmethod
    async def retrieve(
        self, tenant_id: str, capability: str, query: str, db: Any
    ) -> list[ContextItem]: ...


class TextSearchRetriever(ContextRetriever):
    """Retrieval through the database's text search over stored embeddings."""

    def __init__(self, limit: int = 10):
        self.limit = limit

    async def retrieve(
        self, tenant_id: str, capability: str, query: str, db: Any
    ) -> list[ContextItem]:
        if db is None or not query.strip():
            return []
        rows = await db.text_search(tenant_id, query, limit=self.limit)
        items = []
        for row in rows:
            label = f"{row.get('entity_type', 'record')}:{row.get('entity_id', row.get('id'))}"
            items.append(ContextItem(source=label, text=str(row.get("content", ""))))
        return items


@dataclass
class AssembledContext:
    prompt: str
    token_budget: dict[str, int]
    included_sources: list[str] = field(default_factory=list)
    dropped_sources: list[str] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return bool(self.dropped_sources)


def _input_text(payload: dict[str, Any]) -> str:
    for key in ("description", "question", "query", "text", "prompt"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return json.dumps(payload, sort_keys=True, default=str)


class ContextAssembler:
    """
    Builds the user message for the model within ``max_tokens``.

    The rendered prompt and prior session state are mandatory; if they alone
    exceed the budget the stage fails with ``context_too_large``. Retrieved
    items are added in relevance order while they fit, the rest dropped.
    """

    def __init__(
        self,
        max_tokens: int = Config.MAX_CONTEXT_TOKENS,
        token_counter: Optional[TokenCounter] = None,
        retriever: Optional[ContextRetriever] = None,
    ):
        self.max_tokens = max_tokens
        self.count_tokens = token_counter or TiktokenCounter()
        self.retriever = retriever

    async def assemble(
        self,
        tenant_id: str,
        config: CapabilityConfig,
        payload: dict[str, Any],
        session_state: Optional[dict[str, Any]] = None,
        db: Any = None,
    ) -> AssembledContext:
        input_text = _input_text(payload)
        parts = [config.render_prompt(input_text)]
        if len(payload) > 1:
            parts.append("Input:\n" + json.dumps(payload, sort_keys=True, default=str))
        if session_state:
            parts.append("Prior session state:\n" + json.dumps(session_state, sort_keys=True, default=str))

        mandatory = "\n\n".join(parts)
        used = self.count_tokens(config.system_prompt) + self.count_tokens(mandatory)
        if used > self.max_tokens:
            raise StageFailure(
                "context_too_large",
                f"prompt needs {used} tokens, budget is {self.max_tokens}",
                details={"required": used, "budget": self.max_tokens},
            )

        included: list[str] = []
        dropped: list[str] = []
        sections = [mandatory]
        if self.retriever is not None:
            items = await self.retriever.retrieve(tenant_id, config.capability.value, input_text, db)
            for item in items:
                block = f"[{item.source}]\n{item.text}"
                cost = self.count_tokens(block)
                if used + cost > self.max_tokens:
                    dropped.append(item.source)
                    continue
                used += cost
                sections.append(block)
                included.append(item.source)

        if dropped:
            logger.debug(
                f"Context for {config.capability.value} dropped {len(dropped)} items over budget"
            )

        return AssembledContext(
            prompt="\n\n".join(sections),
            token_budget={
                "total": self.max_tokens,
                "used": used,
                "available_for_generation": self.max_tokens - used,
            },
            included_sources=included,
            dropped_sources=dropped,
        )
