"""PM Agents - AI action orchestration and permission pipeline."""

__version__ = "0.4.0"

from .actions import AIAction, ActionResult, ActionStatus
from .errors import OrchestrationError

__all__ = ["AIAction", "ActionResult", "ActionStatus", "OrchestrationError", "__version__"]
