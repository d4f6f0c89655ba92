"""
Consent gate for NeuroDesk.

Every side-effecting action above "safe" asks here first. A request is
handed to the attached boundary (terminal, UI thread, test double) and the
calling thread blocks until the boundary resolves it. At most one request
per kind is outstanding; a newer one declines the stale one. Requests made
with no boundary attached, or outstanding when the boundary goes away,
resolve to declined.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Union

from .config import get_config
from .plan.models import Plan
from .safety.audit import AuditLogger

logger = logging.getLogger(__name__)

Decision = Union[bool, Optional[str]]


class ConsentKind(Enum):
    """What a request asks for."""
    APPROVAL = "approval"   # yes/no for a command or plan
    PASSWORD = "password"   # administrator password


class ConsentState(Enum):
    """Lifecycle of one request."""
    IDLE = "idle"
    AWAITING = "awaiting"
    APPROVED = "approved"
    DECLINED = "declined"

    @property
    def resolved(self) -> bool:
        return self in (ConsentState.APPROVED, ConsentState.DECLINED)


class ConsentRequest:
    """
    One approval or password request.

    Boundaries call ``resolve`` exactly once. Later calls are ignored and
    return False.
    """

    def __init__(self, kind: ConsentKind, prompt: str):
        self.kind = kind
        self.prompt = prompt
        self._state = ConsentState.IDLE
        self._password: Optional[str] = None
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def state(self) -> ConsentState:
        return self._state

    @property
    def approved(self) -> bool:
        return self._state is ConsentState.APPROVED

    def mark_awaiting(self) -> None:
        with self._lock:
            if self._state is ConsentState.IDLE:
                self._state = ConsentState.AWAITING

    def resolve(self, decision: Decision) -> bool:
        """
        Resolve the request.

        Args:
            decision: ``bool`` for approvals; the password (or None) for
                password requests. An empty password counts as declined.

        Returns:
            True if this call resolved the request
        """
        with self._lock:
            if self._state.resolved:
                return False
            if self.kind is ConsentKind.PASSWORD:
                password = decision if isinstance(decision, str) and decision else None
                self._password = password
                self._state = ConsentState.APPROVED if password else ConsentState.DECLINED
            else:
                self._state = ConsentState.APPROVED if decision is True else ConsentState.DECLINED
        self._done.set()
        return True

    def decline(self) -> bool:
        return self.resolve(None if self.kind is ConsentKind.PASSWORD else False)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until resolved. Returns False if *timeout* elapsed first."""
        return self._done.wait(timeout)

    def take_password(self) -> Optional[str]:
        """Hand the password to the caller and drop the request's copy."""
        with self._lock:
            password, self._password = self._password, None
        return password

    def __repr__(self) -> str:
        return f"ConsentRequest(kind={self.kind.value}, state={self._state.value}, prompt={self.prompt[:40]!r})"


class ConsentBoundary(ABC):
    """User-facing side of the consent channel."""

    @abstractmethod
    def present(self, request: ConsentRequest) -> None:
        """
        Show *request* to the user.

        May resolve the request before returning (blocking prompts) or
        later from another thread (event-driven UIs).
        """


class QueueConsentBoundary(ConsentBoundary):
    """
    Boundary that pushes requests onto an outbound queue.

    A UI thread takes requests with ``next_request`` and calls
    ``request.resolve(...)`` when the user answers.
    """

    def __init__(self, outbound: Optional["queue.Queue"] = None):
        self.outbound: "queue.Queue" = outbound or queue.Queue()

    def present(self, request: ConsentRequest) -> None:
        self.outbound.put(request)

    def next_request(self, timeout: Optional[float] = None) -> Optional[ConsentRequest]:
        try:
            return self.outbound.get(timeout=timeout)
        except queue.Empty:
            return None


class ConsentGate:
    """Owns every "may this proceed" decision."""

    def __init__(
        self,
        boundary: Optional[ConsentBoundary] = None,
        decision_timeout: Optional[float] = None,
        audit: Optional[AuditLogger] = None
    ):
        """
        Initialize the gate.

        Args:
            boundary: Initially attached boundary
            decision_timeout: Seconds before an unanswered request is declined
                (defaults to config ``consent.decision_timeout``)
            audit: Audit logger for decisions
        """
        if decision_timeout is None:
            decision_timeout = get_config().consent.decision_timeout
        self.decision_timeout = decision_timeout
        self.audit = audit
        self._boundary = boundary
        self._outstanding: Dict[ConsentKind, ConsentRequest] = {}
        self._lock = threading.Lock()

    @property
    def boundary(self) -> Optional[ConsentBoundary]:
        return self._boundary

    def attach(self, boundary: ConsentBoundary) -> None:
        """Attach a boundary, declining anything the previous one left open."""
        self.detach()
        with self._lock:
            self._boundary = boundary

    def detach(self) -> None:
        """Detach the boundary. Outstanding requests resolve to declined."""
        with self._lock:
            self._boundary = None
            stale = list(self._outstanding.values())
            self._outstanding.clear()
        for request in stale:
            if request.decline():
                logger.info(f"Declined {request.kind.value} request on teardown")

    def close(self) -> None:
        self.detach()

    def outstanding(self, kind: ConsentKind) -> Optional[ConsentRequest]:
        with self._lock:
            return self._outstanding.get(kind)

    def request_approval(self, prompt: str) -> bool:
        """Ask the user to approve an action. Blocks until decided."""
        request = self._ask(ConsentKind.APPROVAL, prompt)
        return request.approved

    def request_password(self, description: str) -> Optional[str]:
        """Ask for the administrator password. None when declined."""
        request = self._ask(ConsentKind.PASSWORD, description)
        return request.take_password()

    def _ask(self, kind: ConsentKind, prompt: str) -> ConsentRequest:
        request = ConsentRequest(kind, prompt)

        with self._lock:
            boundary = self._boundary
            stale = self._outstanding.pop(kind, None)
            if boundary is not None:
                self._outstanding[kind] = request

        if stale is not None and stale.decline():
            logger.info(f"Stale {kind.value} request preempted")

        if boundary is None:
            logger.info(f"No consent boundary attached, declining {kind.value} request")
            request.decline()
            self._record(request)
            return request

        request.mark_awaiting()
        try:
            boundary.present(request)
        except Exception as e:
            logger.error(f"Consent boundary failed to present request: {e}")
            request.decline()

        if not request.wait(self.decision_timeout):
            logger.info(f"{kind.value} request timed out after {self.decision_timeout}s")
            request.decline()

        with self._lock:
            if self._outstanding.get(kind) is request:
                del self._outstanding[kind]

        self._record(request)
        return request

    def _record(self, request: ConsentRequest) -> None:
        if self.audit:
            self.audit.log_consent(request.kind.value, request.prompt, request.approved)

    # Plans

    @staticmethod
    def plan_requires_consent(plan: Plan) -> bool:
        return plan.requires_consent

    @staticmethod
    def summarize_plan(plan: Plan) -> str:
        """Numbered list of step titles with safety badges."""
        lines = ["I will perform the following steps:"]
        for index, step in enumerate(plan.steps, start=1):
            lines.append(f"{index}. {step.safety.badge} {step.title}")
        lines.append("")
        lines.append("Proceed?")
        return "\n".join(lines)

    def approve_plan(self, plan: Plan) -> bool:
        """One consolidated approval for the whole plan, only when needed."""
        if not self.plan_requires_consent(plan):
            return True
        return self.request_approval(self.summarize_plan(plan))
