from importlib.metadata import version

from .action_log import ActionLog
from .adapters import ActionAdapters, HttpActionAdapters, LoggingActionAdapters, StoreBackedAdapters, build_adapters
from .canonical import to_canonical_json
from .decision import DEFAULT_RULES, DecisionRule, decide
from .errors import AdapterError, InvalidTransitionError, NotFoundError, RecoveryError, UndoExpiredError
from .locks import ResourceLock
from .models import (
    ActionKind,
    AutoPilotContext,
    AutoPilotRunResult,
    BlockReason,
    Channel,
    Contact,
    Decision,
    DequeueResult,
    EnqueueResult,
    ExecuteResult,
    Finding,
    FindingType,
    LeverSelection,
    LeverStrategy,
    LogEntry,
    QueueListing,
    RenderedMessage,
    RunStatus,
    RunSummary,
    UndoResult,
    UndoState,
)
from .orchestrator import AutoPilotOrchestrator
from .service import RecoveryService
from .settings import RuntimeSettings
from .state_store import FindingStore
from .templates import TEMPLATES, render_template


def get_version() -> str:
    try:
        return version("recovery-autopilot")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActionAdapters",
    "ActionKind",
    "ActionLog",
    "AdapterError",
    "AutoPilotContext",
    "AutoPilotOrchestrator",
    "AutoPilotRunResult",
    "BlockReason",
    "Channel",
    "Contact",
    "DEFAULT_RULES",
    "Decision",
    "DecisionRule",
    "DequeueResult",
    "EnqueueResult",
    "ExecuteResult",
    "Finding",
    "FindingStore",
    "FindingType",
    "HttpActionAdapters",
    "InvalidTransitionError",
    "LeverSelection",
    "LeverStrategy",
    "LogEntry",
    "LoggingActionAdapters",
    "NotFoundError",
    "QueueListing",
    "RecoveryError",
    "RecoveryService",
    "RenderedMessage",
    "ResourceLock",
    "RunStatus",
    "RunSummary",
    "RuntimeSettings",
    "StoreBackedAdapters",
    "TEMPLATES",
    "UndoExpiredError",
    "UndoResult",
    "UndoState",
    "build_adapters",
    "decide",
    "get_version",
    "render_template",
    "to_canonical_json",
]
