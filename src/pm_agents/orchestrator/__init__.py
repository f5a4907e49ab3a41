"""AI action orchestration: pipeline, review and rollback."""

from .context import (
    AssembledContext,
    ContextAssembler,
    ContextItem,
    ContextRetriever,
    TextSearchRetriever,
    TiktokenCounter,
)
from .mutations import MutationApplier, MutationPlanner
from .pipeline import AIOrchestrator, output_confidence, parse_model_output, validate_output
from .review import ReviewDecision, ReviewService

__all__ = [
    "AIOrchestrator",
    "AssembledContext",
    "ContextAssembler",
    "ContextItem",
    "ContextRetriever",
    "MutationApplier",
    "MutationPlanner",
    "ReviewDecision",
    "ReviewService",
    "TextSearchRetriever",
    "TiktokenCounter",
    "output_confidence",
    "parse_model_output",
    "validate_output",
]
