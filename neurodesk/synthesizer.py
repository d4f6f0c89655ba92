"""
LLM command synthesis.

Turns a free-text request into one bash command line, asks for consent and
runs it in a fresh workspace. Used when no intent or install plan matches.
"""

import logging
from typing import List, Optional, Sequence

from .config import get_config
from .consent import ConsentGate
from .errors import ChatCompletionError, SynthesisError
from .executor.query import BashQueryExecutor, BashQueryResult
from .providers.base import ChatCompletionClient, ImageUpload
from .ratelimit import SendBudget
from .safety.audit import AuditLogger
from .safety.guardrails import SafetyGuard
from .session import OrchestrationSession
from .shell import strip_code_fence

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a bash assistant. Convert natural language tasks into a single safe bash "
    "command line that runs non-interactively on macOS. Return ONLY the command, no "
    "markdown, no commentary. Prefer standard tools. Assume a clean non-login bash with "
    "no aliases. If the task is ambiguous, choose a reasonable default."
)

USER_PROMPT = (
    "Task:\n{task}\n\n"
    "Available environment variables you may reference:\n"
    "- IMAGE_DIR, IMAGE_COUNT, IMAGE_1..N\n"
    "- FILE_DIR, FILE_COUNT, FILE_1..N\n"
    "- BASH_WORK_DIR\n"
    "Return only the final command line."
)

NO_COMMAND_MESSAGE = "I couldn't derive a runnable command from your request."


def extract_command(raw: str) -> str:
    """First non-empty line of the model reply, with any code fence removed."""
    for line in strip_code_fence(raw).splitlines():
        line = line.strip()
        if line:
            return line
    return ""


def build_messages(task: str) -> List[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": USER_PROMPT.format(task=task)},
    ]


def format_result(result: BashQueryResult, output_chars: int) -> str:
    """The assistant turn reporting a synthesized command's run."""
    parts = [
        f"I generated and ran the following command (with your approval):\n\nbash$ {result.command}",
        f"Exit code: {result.exit_code}",
    ]
    if result.installed_tools:
        parts.append("Installed with Homebrew: " + ", ".join(result.installed_tools))

    stdout = result.stdout.strip()
    stderr = result.stderr.strip()
    if stdout:
        parts.append(f"stdout:\n{stdout[:output_chars]}")
    if stderr:
        parts.append(f"stderr:\n{stderr[:output_chars]}")

    if result.output_files:
        listing = "\n".join(f.describe() for f in result.output_files)
        parts.append(f"Generated files (saved under {result.working_directory}):\n{listing}")

    return "\n\n".join(parts)


class CommandSynthesizer:
    """Fallback path: ask the model for a command, then run it with consent."""

    def __init__(
        self,
        client: ChatCompletionClient,
        session: OrchestrationSession,
        gate: ConsentGate,
        executor: Optional[BashQueryExecutor] = None,
        budget: Optional[SendBudget] = None,
        guard: Optional[SafetyGuard] = None,
        audit: Optional[AuditLogger] = None,
        model: Optional[str] = None
    ):
        config = get_config()
        self.client = client
        self.session = session
        self.gate = gate
        self.executor = executor or BashQueryExecutor()
        self.budget = budget or SendBudget()
        self.guard = guard or SafetyGuard()
        self.audit = audit
        self.model = model or config.api.model
        self.temperature = config.api.temperature
        self.default_timeout = config.executor.default_timeout
        self.output_chars = config.executor.command_output_chars

    @property
    def conversation(self):
        return self.session.conversation

    def synthesize(self, text: str) -> str:
        """
        Ask the model for a command line.

        Returns:
            The raw model reply

        Raises:
            SynthesisError: If the send is blocked or the API call fails
        """
        if not self.budget.before_send():
            raise SynthesisError("Send blocked by rate limit.")

        try:
            response = self.client.stream_complete(
                self.model,
                build_messages(text),
                temperature=self.temperature
            )
            self.budget.update(response.rate_limit)
            return response.text()
        except ChatCompletionError as e:
            logger.warning(f"Command synthesis failed: {e}")
            raise SynthesisError(
                str(e),
                user_message=e.user_message,
                suggested_action=e.suggested_action
            ) from e

    def run_with_consent(
        self,
        command: str,
        uploads: Optional[Sequence[ImageUpload]] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """
        Ask for approval, run *command* and report the result.

        Returns:
            True if the command ran and exited with 0
        """
        check = self.guard.check_command(command)
        if not check.is_allowed:
            logger.warning(f"Refused synthesized command: {check.reason}")
            self.conversation.assistant(f"{check.user_warning}\n\nbash$ {command}")
            return False

        prompt = f"Run this command?\n\nbash$ {command}"
        if check.user_warning:
            prompt += f"\n\n{check.user_warning}"

        if not self.gate.request_approval(prompt):
            self.conversation.assistant(f"Cancelled. I did not run:\n\nbash$ {command}")
            return False

        result = self.executor.execute(command, timeout or self.default_timeout, uploads)
        if self.audit:
            self.audit.log_command(
                command,
                result.stdout + result.stderr,
                result.exit_code,
                result.working_directory
            )

        self.conversation.assistant(format_result(result, self.output_chars))
        return result.exit_code == 0

    def compose_and_run(
        self,
        text: str,
        uploads: Optional[Sequence[ImageUpload]] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """Synthesize a command for *text* and run it with consent."""
        try:
            raw = self.synthesize(text)
        except SynthesisError as e:
            message = e.user_message
            if e.suggested_action:
                message += f"\nSuggestion: {e.suggested_action}"
            self.conversation.assistant(message)
            return False

        command = extract_command(raw)
        if not command:
            self.conversation.assistant(NO_COMMAND_MESSAGE)
            return False

        logger.debug(f"Synthesized command: {command}")
        return self.run_with_consent(command, uploads, timeout)
