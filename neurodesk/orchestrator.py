"""
Request orchestration.

Routes each request to the first handler that claims it: deterministic
intents, then install plans, then LLM command synthesis. Every outcome,
including unexpected errors, ends up as conversation turns.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import get_config
from .consent import ConsentGate
from .errors import ErrorBoundary, ErrorContext, format_error_for_log, format_error_for_user
from .executor.query import BashQueryExecutor, format_size
from .executor.runner import ProcessRunner
from .intents import Intent, IntentClassifier, IntentMatch, find_tree_binary, tree_command
from .network import scan_host
from .plan.builder import HomebrewProbe, InstallPlanBuilder
from .plan.executor import PlanExecutor
from .providers.base import ChatCompletionClient, ImageUpload, StreamResponse
from .providers.factory import create_client
from .ratelimit import SendBudget
from .safety.audit import AuditLogger
from .session import Attachment, OrchestrationSession
from .synthesizer import CommandSynthesizer

logger = logging.getLogger(__name__)

TIME_COMMAND = 'date +"%H:%M:%S %Z"'
TIME_TIMEOUT = 10

TREE_FILENAMES = {
    Intent.CREATE_TREE: "filesystem_tree.txt",
    Intent.ROOT_TREE: "root_structure.txt",
}
TREE_TIMEOUTS = {
    Intent.CREATE_TREE: 180,
    Intent.ROOT_TREE: 300,
}


class Orchestrator:
    """Composition root for one orchestration session."""

    def __init__(
        self,
        session: Optional[OrchestrationSession] = None,
        gate: Optional[ConsentGate] = None,
        client: Optional[ChatCompletionClient] = None,
        runner: Optional[ProcessRunner] = None,
        probe: Optional[HomebrewProbe] = None,
        audit: Optional[AuditLogger] = None,
        budget: Optional[SendBudget] = None,
        classifier: Optional[IntentClassifier] = None,
        builder: Optional[InstallPlanBuilder] = None,
        synthesizer: Optional[CommandSynthesizer] = None,
        tree_output_dir: Optional[str] = None,
        tree_binary_finder: Callable[[], Optional[str]] = find_tree_binary
    ):
        config = get_config()
        self.session = session or OrchestrationSession()
        self.audit = audit if audit is not None else AuditLogger()
        self.gate = gate or ConsentGate(audit=self.audit)
        self.runner = runner or ProcessRunner()
        self.probe = probe or HomebrewProbe()
        self.budget = budget or SendBudget()
        self.classifier = classifier or IntentClassifier()
        self.builder = builder or InstallPlanBuilder(self.probe)
        self.tree_output_dir = tree_output_dir or config.intents.tree_output_dir
        self.find_tree_binary = tree_binary_finder
        self.model = config.api.model
        self.temperature = config.api.temperature

        self._client = client
        self._synthesizer = synthesizer
        self._lock = threading.Lock()
        self._stream_lock = threading.Lock()
        self._active_stream: Optional[StreamResponse] = None

    @property
    def conversation(self):
        return self.session.conversation

    @property
    def client(self) -> ChatCompletionClient:
        if self._client is None:
            self._client = create_client()
        return self._client

    @property
    def synthesizer(self) -> CommandSynthesizer:
        if self._synthesizer is None:
            self._synthesizer = CommandSynthesizer(
                self.client,
                self.session,
                self.gate,
                executor=BashQueryExecutor(self.runner, self.probe),
                budget=self.budget,
                audit=self.audit,
                model=self.model
            )
        return self._synthesizer

    def plan_executor(self) -> PlanExecutor:
        return PlanExecutor(self.session, self.gate, self.runner, self.probe, self.audit)

    def _report_error(self, context: ErrorContext) -> None:
        logger.error(format_error_for_log(context))
        self.audit.log_error(context.operation, context.technical_message)
        self.conversation.assistant(format_error_for_user(context))

    # Requests

    def handle_request(
        self,
        text: str,
        uploads: Optional[Sequence[ImageUpload]] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """
        Handle one user request.

        Returns:
            True if the request ran to successful completion
        """
        self.cancel_stream()
        text = text.strip()
        if not text:
            return False

        with self._lock:
            with ErrorBoundary("handle_request", on_error=self._report_error):
                self.audit.log_user_query(text)
                return self._route(text, uploads, timeout)
        return False

    def _route(
        self,
        text: str,
        uploads: Optional[Sequence[ImageUpload]],
        timeout: Optional[float]
    ) -> bool:
        match = self.classifier.classify(text)
        if match is not None:
            logger.info(f"Request matched intent {match.intent.value}")
            if match.intent is Intent.TIME:
                return self.run_time()
            return self.run_tree(match)

        plan = self.builder.build(text)
        if plan is not None:
            logger.info(f"Request matched install plan: {plan.description}")
            return self.plan_executor().execute(plan)

        return self.synthesizer.compose_and_run(text, uploads, timeout)

    def run_time(self) -> bool:
        result = self.runner.run(TIME_COMMAND, TIME_TIMEOUT).collect()
        self.conversation.user(f"bash$ {TIME_COMMAND}")
        if result.success:
            self.conversation.assistant(f"The current time is: {result.stdout.strip()}")
            return True

        output = result.output.strip() or "(no output)"
        self.conversation.assistant(f"Command failed (exit {result.exit_code}). Output:\n{output}")
        return False

    def run_tree(self, match: IntentMatch) -> bool:
        """Generate a directory listing and save it under the output directory."""
        command = tree_command(match.root, match.depth, self.find_tree_binary())
        destination = Path(self.tree_output_dir).expanduser() / TREE_FILENAMES[match.intent]

        approved = self.gate.request_approval(
            f"I will generate a tree listing of {match.root} (depth {match.depth}) by running:\n\n"
            f"{command}\n\nThen I will save it to {destination}."
        )
        if not approved:
            self.conversation.assistant("Cancelled. No files were created.")
            return False

        result = self.runner.run(command, TREE_TIMEOUTS[match.intent]).collect()
        self.conversation.user(f"bash$ {command}")

        if not result.success:
            output = result.output.strip() or "(no output)"
            self.conversation.assistant(
                f"Failed to generate the tree listing (exit {result.exit_code}).\n\n"
                f"stderr/stdout:\n{output}"
            )
            return False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(result.stdout, encoding="utf-8")
            size = destination.stat().st_size
        except OSError as e:
            logger.error(f"Could not save tree listing to {destination}: {e}")
            self.conversation.assistant(f"Failed to save file: {e}")
            return False

        self.conversation.assistant(f"Saved the tree listing to:\n{destination} ({format_size(size)})")
        return True

    def install_system_wide(self, package: str) -> bool:
        """Install *package* for all users and verify it."""
        package = package.strip()
        plan = self.builder.build(f"install {package} system-wide and verify") if package else None
        if plan is None:
            self.conversation.assistant(f"Sorry, I couldn't build an install plan for {package}.")
            return False

        self.cancel_stream()
        with self._lock:
            with ErrorBoundary("install_system_wide", on_error=self._report_error):
                return self.plan_executor().execute(plan)
        return False

    def scan(self, host: str, timeout: float = 60) -> bool:
        """Run an nmap service scan and report it as a turn."""
        with self._lock:
            with ErrorBoundary("scan_host", on_error=self._report_error):
                result = scan_host(host, timeout, self.runner, self.probe)
                self.conversation.assistant(result.output.strip() or "(no output)")
                return result.success
        return False

    # Chat

    def cancel_stream(self) -> None:
        """Stop the token stream in flight, if any."""
        with self._stream_lock:
            stream = self._active_stream
            self._active_stream = None
        if stream is not None and not stream.closed:
            logger.info("Superseding in-flight token stream")
            stream.close()

    def send_chat(
        self,
        text: str,
        images: Optional[Sequence[ImageUpload]] = None,
        on_token: Optional[Callable[[str], None]] = None
    ) -> Optional[str]:
        """
        Send a plain chat turn and stream the reply into an assistant turn.

        A later request closes this stream; the partial reply is kept.

        Returns:
            The reply text, or None if nothing was received
        """
        self.cancel_stream()
        attachments: List[Attachment] = [
            Attachment(i.filename, i.mime_type, len(i.data)) for i in images or []
        ]
        self.conversation.user(text, attachments)

        if not self.budget.before_send():
            self.conversation.assistant("Send blocked by rate limit.")
            return None

        with ErrorBoundary("send_chat", on_error=self._report_error):
            response = self.client.stream_complete(
                self.model,
                self.conversation.to_api(),
                temperature=self.temperature,
                images=images
            )
            self.budget.update(response.rate_limit)
            with self._stream_lock:
                self._active_stream = response

            parts: List[str] = []
            try:
                for token in response:
                    parts.append(token)
                    if on_token:
                        on_token(token)
            finally:
                with self._stream_lock:
                    if self._active_stream is response:
                        self._active_stream = None

            reply = "".join(parts)
            if reply:
                self.conversation.assistant(reply)
                return reply
        return None
