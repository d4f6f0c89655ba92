"""
Plan execution.

Walks a Plan's steps in order, reporting progress as assistant turns.
The first failing step aborts the rest of the plan.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ..config import get_config
from ..consent import ConsentGate
from ..executor.runner import CommandResult, ProcessRunner
from ..safety.audit import AuditLogger
from ..session import OrchestrationSession
from ..shell import (
    ASKPASS_VARIABLE,
    askpass_script,
    is_auth_failure,
    path_prefix_export,
    sudo_prime,
    sudo_wrap,
)
from .builder import HomebrewProbe
from .models import Plan, Step, SudoMode

logger = logging.getLogger(__name__)


def _running_as_root() -> bool:
    return os.geteuid() == 0


class PlanExecutor:
    """Runs plans step by step under one consolidated consent."""

    def __init__(
        self,
        session: OrchestrationSession,
        gate: ConsentGate,
        runner: Optional[ProcessRunner] = None,
        probe: Optional[HomebrewProbe] = None,
        audit: Optional[AuditLogger] = None,
        is_root: Callable[[], bool] = _running_as_root
    ):
        """
        Initialize the executor.

        Args:
            session: Session whose conversation and credential cache are used
            gate: Consent gate for plan approval and password prompts
            runner: Process runner
            probe: Homebrew probe used for the PATH prefix
            audit: Audit logger for step results
            is_root: Returns True when sudo is unnecessary
        """
        self.session = session
        self.gate = gate
        self.runner = runner or ProcessRunner()
        self.probe = probe or HomebrewProbe()
        self.audit = audit
        self.is_root = is_root
        self.output_chars = get_config().executor.step_output_chars

    @property
    def conversation(self):
        return self.session.conversation

    def execute(self, plan: Plan) -> bool:
        """
        Execute *plan*.

        Returns:
            True if every step succeeded
        """
        if not self.gate.approve_plan(plan):
            self.conversation.assistant("Cancelled. No changes were made.")
            return False

        for step in plan.steps:
            if not self.run_step(step):
                self.conversation.assistant(f"Step failed: {step.title}. Aborting plan.")
                logger.info(f"Plan '{plan.description}' aborted at '{step.title}'")
                return False

        self.conversation.assistant(f"Completed: {plan.description}")
        return True

    def run_step(self, step: Step) -> bool:
        """Run one step and report its output. Returns True on success."""
        self.conversation.assistant(f"Running: {step.title}")

        body = path_prefix_export(self.probe.path_directories()) + step.command
        use_sudo = step.requires_sudo and not self.is_root()

        if use_sudo:
            password = self._obtain_password(step)
            if not password:
                self.conversation.assistant(
                    f"No administrator password was provided for step '{step.title}'."
                )
                return False
            result = self._run_elevated(step, body, password)
        else:
            stdin = step.stdin_provider() if step.stdin_provider else None
            result = self.runner.run(body, step.timeout_seconds, stdin=stdin).collect()
        output = result.output.strip()

        auth_failed = use_sudo and is_auth_failure(result.output)
        succeeded = result.success and not auth_failed

        if self.audit:
            self.audit.log_step(
                step.title,
                step.command,
                result.exit_code if not auth_failed else result.exit_code or 1,
                step.requires_sudo
            )

        if succeeded:
            if output:
                self.conversation.assistant(f"Output:\n{output[:self.output_chars]}")
            return True

        if step.requires_sudo:
            self.session.sudo.clear()
        if auth_failed:
            logger.warning(f"Administrator authentication failed for step '{step.title}'")

        shown = output[:self.output_chars] if output else "(no output)"
        self.conversation.assistant(
            f"Command failed (exit {result.exit_code}) for step '{step.title}'. Output:\n{shown}"
        )
        return False

    def _obtain_password(self, step: Step) -> Optional[str]:
        """Reuse the cached credential or ask for one."""
        cached = self.session.sudo.get()
        if cached:
            return cached
        password = self.gate.request_password(
            f"Administrator privileges are required to run: {step.title}"
        )
        if password:
            self.session.sudo.set(password)
        return password

    def _run_elevated(self, step: Step, body: str, password: str) -> CommandResult:
        shell = self.runner.shell
        stdin = self.session.sudo.stdin_bytes()
        if step.sudo_mode is not SudoMode.PRIME:
            return self.runner.run(sudo_wrap(body, shell), step.timeout_seconds, stdin=stdin).collect()

        with askpass_helper() as helper:
            return self.runner.run(
                sudo_prime(body, helper, shell),
                step.timeout_seconds,
                stdin=stdin,
                env={ASKPASS_VARIABLE: password}
            ).collect()


@contextmanager
def askpass_helper() -> Iterator[str]:
    """Write the askpass script to a private directory for one step."""
    directory = tempfile.mkdtemp(prefix="neurodesk-askpass-")
    path = os.path.join(directory, "askpass")
    try:
        with open(path, "w") as f:
            f.write(askpass_script())
        os.chmod(path, 0o700)
        yield path
    finally:
        shutil.rmtree(directory, ignore_errors=True)
