"""
Return-request mutation workflow.

Two layers:
- `reduce(state, action)`: pure transitions of the form state
  (Draft -> Validating -> Submitting -> Confirmed | Rejected)
- `ReturnRequestWorkflow`: the async steps around it (inventory read,
  validation, idempotent submit, optimistic inventory update, cache
  invalidation) producing a SubmissionOutcome for observers

The client event id is minted once per draft and reused on every retry, so a
submission that timed out after the server accepted it is answered with the
original result instead of creating a second return.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Protocol, Union
import asyncio
import logging
import uuid

from .cache import CacheSynchronizer, any_of, match_resource
from .errors import (
    ConflictError,
    DashboardError,
    IssueCode,
    LineIssue,
    NetworkError,
    ValidationError,
)
from .inventory import InventorySnapshot, inventory_fingerprint, read_inventory
from .realtime import Subscription, discard_handler, invoke_handler

logger = logging.getLogger(__name__)


class ReturnPhase(Enum):
    DRAFT = "draft"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ReturnLine:
    product_id: str = ""
    quantity: float = 0
    reason: str = ""
    reason_en: str = ""


@dataclass(frozen=True)
class ReturnRequest:
    """What is sent to the server; built from a validated draft."""

    client_event_id: str
    branch_id: str
    items: tuple[ReturnLine, ...]
    notes: str = ""

    def quantities(self) -> dict[str, float]:
        totals: dict[str, float] = defaultdict(float)
        for line in self.items:
            totals[line.product_id] += line.quantity
        return dict(totals)

    def to_payload(self) -> dict:
        return {
            "clientEventId": self.client_event_id,
            "branchId": self.branch_id,
            "items": [
                {
                    "product": line.product_id,
                    "quantity": line.quantity,
                    "reason": line.reason,
                    "reasonEn": line.reason_en or line.reason,
                }
                for line in self.items
            ],
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ReturnFormState:
    branch_id: str | None = None
    lines: tuple[ReturnLine, ...] = ()
    notes: str = ""
    phase: ReturnPhase = ReturnPhase.DRAFT
    client_event_id: str | None = None
    issues: tuple[LineIssue, ...] = ()
    result: dict | None = None
    error: str | None = None

    def issues_for(self, index: int) -> list[LineIssue]:
        return [issue for issue in self.issues if issue.index == index]


# =============================================================================
# ACTIONS
# =============================================================================


@dataclass(frozen=True)
class AddLine:
    line: ReturnLine = field(default_factory=ReturnLine)


@dataclass(frozen=True)
class UpdateLine:
    """Change one line; fields left as None are kept."""

    index: int
    product_id: str | None = None
    quantity: float | None = None
    reason: str | None = None
    reason_en: str | None = None


@dataclass(frozen=True)
class RemoveLine:
    index: int


@dataclass(frozen=True)
class SetNotes:
    notes: str


@dataclass(frozen=True)
class SetBranch:
    branch_id: str


@dataclass(frozen=True)
class BeginValidation:
    pass


@dataclass(frozen=True)
class ValidationFailed:
    issues: tuple[LineIssue, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class BeginSubmit:
    client_event_id: str


@dataclass(frozen=True)
class SubmitSucceeded:
    result: dict


@dataclass(frozen=True)
class SubmitFailed:
    error: str
    issues: tuple[LineIssue, ...] = ()


@dataclass(frozen=True)
class Reset:
    pass


Action = Union[
    AddLine,
    UpdateLine,
    RemoveLine,
    SetNotes,
    SetBranch,
    BeginValidation,
    ValidationFailed,
    BeginSubmit,
    SubmitSucceeded,
    SubmitFailed,
    Reset,
]

EDIT_ACTIONS = (AddLine, UpdateLine, RemoveLine, SetNotes, SetBranch)
EDITABLE_PHASES = {ReturnPhase.DRAFT, ReturnPhase.REJECTED}


class InvalidTransition(ValueError):
    """Raised when an action is not allowed in the current phase."""


def _require(state: ReturnFormState, action: Action, phases: set[ReturnPhase]) -> None:
    if state.phase not in phases:
        raise InvalidTransition(f"{type(action).__name__} not allowed while {state.phase.value}")


def _replace_line(lines: tuple[ReturnLine, ...], index: int, line: ReturnLine | None) -> tuple[ReturnLine, ...]:
    if not 0 <= index < len(lines):
        raise IndexError(f"No return line at index {index}")
    updated = list(lines)
    if line is None:
        del updated[index]
    else:
        updated[index] = line
    return tuple(updated)


def _edit(state: ReturnFormState, action: Action) -> ReturnFormState:
    if isinstance(action, AddLine):
        return replace(state, lines=state.lines + (action.line,))

    if isinstance(action, UpdateLine):
        if not 0 <= action.index < len(state.lines):
            raise IndexError(f"No return line at index {action.index}")
        current = state.lines[action.index]
        changes = {
            name: getattr(action, name)
            for name in ("product_id", "quantity", "reason", "reason_en")
            if getattr(action, name) is not None
        }
        return replace(state, lines=_replace_line(state.lines, action.index, replace(current, **changes)))

    if isinstance(action, RemoveLine):
        return replace(state, lines=_replace_line(state.lines, action.index, None))

    if isinstance(action, SetNotes):
        return replace(state, notes=action.notes)

    return replace(state, branch_id=action.branch_id)


def reduce(state: ReturnFormState, action: Action) -> ReturnFormState:
    """
    Pure state transition for the return form.

    Editing is allowed in DRAFT and REJECTED; editing a rejected draft puts
    it back into DRAFT but keeps its client event id, so a corrected
    resubmission is still recognized by the server.
    """
    if isinstance(action, Reset):
        return ReturnFormState(branch_id=state.branch_id)

    if isinstance(action, EDIT_ACTIONS):
        _require(state, action, EDITABLE_PHASES)
        edited = _edit(state, action)
        return replace(edited, phase=ReturnPhase.DRAFT, issues=(), error=None)

    if isinstance(action, BeginValidation):
        _require(state, action, EDITABLE_PHASES)
        return replace(state, phase=ReturnPhase.VALIDATING, issues=(), error=None)

    if isinstance(action, ValidationFailed):
        _require(state, action, {ReturnPhase.VALIDATING})
        return replace(state, phase=ReturnPhase.REJECTED, issues=tuple(action.issues), error=action.error)

    if isinstance(action, BeginSubmit):
        _require(state, action, {ReturnPhase.VALIDATING})
        return replace(
            state,
            phase=ReturnPhase.SUBMITTING,
            client_event_id=state.client_event_id or action.client_event_id,
        )

    if isinstance(action, SubmitSucceeded):
        _require(state, action, {ReturnPhase.SUBMITTING})
        return replace(state, phase=ReturnPhase.CONFIRMED, result=action.result, error=None)

    if isinstance(action, SubmitFailed):
        _require(state, action, {ReturnPhase.SUBMITTING})
        return replace(state, phase=ReturnPhase.REJECTED, issues=tuple(action.issues), error=action.error)

    raise TypeError(f"Unknown action: {action!r}")


# =============================================================================
# VALIDATION
# =============================================================================


def validate_lines(lines: tuple[ReturnLine, ...] | list[ReturnLine], snapshot: InventorySnapshot) -> list[LineIssue]:
    """
    Check every line against the branch inventory and collect all problems.

    Quantities for the same product are checked cumulatively, so two lines of
    3 against a stock of 5 fail on the second line. Lines that fail do not
    count toward the running total.
    """
    if not lines:
        return [LineIssue(IssueCode.EMPTY_REQUEST, "items", "At least one item is required")]

    issues = []
    requested: dict[str, float] = defaultdict(float)
    for index, line in enumerate(lines):
        if not line.product_id or line.product_id not in snapshot:
            issues.append(
                LineIssue(
                    IssueCode.PRODUCT_NOT_FOUND,
                    "product_id",
                    f"Product {line.product_id or '(none)'} is not available in this branch",
                    index,
                )
            )
        else:
            available = snapshot.available(line.product_id)
            already = requested[line.product_id]
            # NaN fails this comparison as well
            if not (0 < line.quantity <= available - already):
                issues.append(
                    LineIssue(
                        IssueCode.QUANTITY_OUT_OF_RANGE,
                        "quantity",
                        f"Quantity must be between 1 and {max(available - already, 0):g}",
                        index,
                    )
                )
            else:
                requested[line.product_id] += line.quantity

        if not line.reason.strip():
            issues.append(LineIssue(IssueCode.MISSING_REASON, "reason", "Reason is required", index))

    return issues


# =============================================================================
# WORKFLOW
# =============================================================================


class ReturnsGateway(Protocol):
    async def get_inventory(self, branch_id: str) -> list[dict]: ...

    async def create_return(self, payload: dict) -> dict: ...


@dataclass(frozen=True)
class SubmissionOutcome:
    state: ReturnFormState
    result: dict | None = None
    error: DashboardError | None = None

    @property
    def ok(self) -> bool:
        return self.state.phase is ReturnPhase.CONFIRMED

    @property
    def issues(self) -> tuple[LineIssue, ...]:
        return self.state.issues

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


def _new_event_id() -> str:
    return str(uuid.uuid4())


class ReturnRequestWorkflow:
    """
    Drives one return draft from editing to a confirmed server record.

    `submit` never raises DashboardError: validation problems, network
    failures and authorization errors all come back in the outcome so the
    presentation layer can choose between retry and fatal display.

    Usage:
        workflow = ReturnRequestWorkflow(cache, client, branch_id)
        workflow.dispatch(AddLine(ReturnLine("p1", 2, "damaged")))
        outcome = await workflow.submit()
    """

    def __init__(
        self,
        cache: CacheSynchronizer,
        gateway: ReturnsGateway,
        branch_id: str | None = None,
        inventory_ttl: float | None = None,
        id_factory: Callable[[], str] = _new_event_id,
    ):
        self.cache = cache
        self.gateway = gateway
        self.inventory_ttl = inventory_ttl
        self.state = ReturnFormState(branch_id=branch_id)
        self._id_factory = id_factory
        self._observers: list[Callable[[SubmissionOutcome], Any]] = []
        self._outcome: SubmissionOutcome | None = None
        self._pending: asyncio.Future | None = None

    def dispatch(self, action: Action) -> ReturnFormState:
        self.state = reduce(self.state, action)
        if isinstance(action, Reset):
            self._outcome = None
        return self.state

    def add_observer(self, callback: Callable[[SubmissionOutcome], Any]) -> Subscription:
        self._observers.append(callback)
        return Subscription(lambda: discard_handler(self._observers, callback))

    async def snapshot(self) -> InventorySnapshot:
        return await read_inventory(
            self.cache, self.gateway.get_inventory, self.state.branch_id, self.inventory_ttl
        )

    async def submit(self) -> SubmissionOutcome:
        """
        Validate and send the draft.

        Calls made while a submission is running wait for that submission's
        outcome instead of starting another one.
        """
        if self._pending is None or self._pending.done():
            self._pending = asyncio.ensure_future(self._submit())
        return await asyncio.shield(self._pending)

    async def _submit(self) -> SubmissionOutcome:
        if self.state.phase is ReturnPhase.CONFIRMED and self._outcome is not None:
            return self._outcome

        self.dispatch(BeginValidation())
        branch_id = self.state.branch_id
        if not branch_id:
            issue = LineIssue(IssueCode.INVALID, "branch_id", "Branch is required")
            return self._reject_validation([issue])

        try:
            snapshot = await self.snapshot()
        except DashboardError as exc:
            logger.warning("Cannot validate return for branch %s: %s", branch_id, exc)
            self.dispatch(ValidationFailed(error=exc.message or str(exc)))
            return self._finish(error=exc)

        issues = validate_lines(self.state.lines, snapshot)
        if issues:
            return self._reject_validation(issues)

        self.dispatch(BeginSubmit(self.state.client_event_id or self._id_factory()))
        request = ReturnRequest(
            client_event_id=self.state.client_event_id,
            branch_id=branch_id,
            items=self.state.lines,
            notes=self.state.notes,
        )

        fingerprint = inventory_fingerprint(branch_id)
        decrements = request.quantities()
        try:
            previous = self.cache.mutate(fingerprint, lambda snap: snap.with_decrements(decrements))
        except KeyError:
            previous = None

        try:
            result = await self.gateway.create_return(request.to_payload())
        except ConflictError as exc:
            logger.info("Return %s was already accepted, using original result", request.client_event_id)
            result = exc.result or {}
        except DashboardError as exc:
            if previous is not None:
                self.cache.restore(fingerprint, previous)
            issues = exc.issues if isinstance(exc, ValidationError) else []
            self.dispatch(SubmitFailed(error=exc.message or str(exc), issues=tuple(issues)))
            logger.warning("Return %s rejected: %s", request.client_event_id, exc)
            return self._finish(error=exc)
        except Exception as exc:
            if previous is not None:
                self.cache.restore(fingerprint, previous)
            logger.exception("Return %s failed unexpectedly", request.client_event_id)
            error = NetworkError(f"Unexpected response: {exc.__class__.__name__}")
            self.dispatch(SubmitFailed(error=error.message))
            return self._finish(error=error)

        self.dispatch(SubmitSucceeded(result))
        self.cache.invalidate(
            any_of(
                match_resource("returns", branch=branch_id),
                match_resource("inventory", branch=branch_id),
            )
        )
        logger.info("Return %s confirmed for branch %s", request.client_event_id, branch_id)
        return self._finish(result=result)

    def _reject_validation(self, issues: list[LineIssue]) -> SubmissionOutcome:
        error = ValidationError(issues=issues)
        self.dispatch(ValidationFailed(issues=tuple(issues), error=error.message))
        logger.info("Return draft has %d validation issues", len(issues))
        return self._finish(error=error)

    def _finish(self, result: dict | None = None, error: DashboardError | None = None) -> SubmissionOutcome:
        outcome = SubmissionOutcome(state=self.state, result=result, error=error)
        self._outcome = outcome
        for observer in list(self._observers):
            invoke_handler(observer, outcome, "returnSubmission")
        return outcome
