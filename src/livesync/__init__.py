# Cache synchronization, realtime invalidation and mutation workflows
# Keeps dashboard reads consistent with the backend on a single event loop

from .errors import (
    AuthorizationError,
    ConflictError,
    DashboardError,
    IssueCode,
    LineIssue,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from .cache import (
    CacheEntry,
    CacheStatus,
    CacheSynchronizer,
    LiveQuery,
    any_of,
    make_fingerprint,
    match_all,
    match_resource,
    parse_fingerprint,
)
from .inventory import InventoryItem, InventorySnapshot, inventory_fingerprint, read_inventory
from .realtime import (
    DEFAULT_ROUTES,
    InMemoryHub,
    InMemoryTransport,
    Notification,
    RealtimeChannel,
    Route,
    SessionContext,
    Subscription,
    Transport,
    branch_matcher,
)
from .returns import (
    AddLine,
    BeginSubmit,
    BeginValidation,
    InvalidTransition,
    RemoveLine,
    Reset,
    ReturnFormState,
    ReturnLine,
    ReturnPhase,
    ReturnRequest,
    ReturnRequestWorkflow,
    SetBranch,
    SetNotes,
    SubmissionOutcome,
    SubmitFailed,
    SubmitSucceeded,
    UpdateLine,
    ValidationFailed,
    reduce,
    validate_lines,
)

__all__ = [
    "AuthorizationError",
    "ConflictError",
    "DashboardError",
    "IssueCode",
    "LineIssue",
    "NetworkError",
    "NotFoundError",
    "ValidationError",
    "CacheEntry",
    "CacheStatus",
    "CacheSynchronizer",
    "LiveQuery",
    "any_of",
    "make_fingerprint",
    "match_all",
    "match_resource",
    "parse_fingerprint",
    "InventoryItem",
    "InventorySnapshot",
    "inventory_fingerprint",
    "read_inventory",
    "DEFAULT_ROUTES",
    "InMemoryHub",
    "InMemoryTransport",
    "Notification",
    "RealtimeChannel",
    "Route",
    "SessionContext",
    "Subscription",
    "Transport",
    "branch_matcher",
    "AddLine",
    "BeginSubmit",
    "BeginValidation",
    "InvalidTransition",
    "RemoveLine",
    "Reset",
    "ReturnFormState",
    "ReturnLine",
    "ReturnPhase",
    "ReturnRequest",
    "ReturnRequestWorkflow",
    "SetBranch",
    "SetNotes",
    "SubmissionOutcome",
    "SubmitFailed",
    "SubmitSucceeded",
    "UpdateLine",
    "ValidationFailed",
    "reduce",
    "validate_lines",
]
