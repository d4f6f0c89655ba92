"""Pytest configuration and shared fixtures."""

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import MagicMock

import pytest

from neurodesk.config import reset_config
from neurodesk.consent import ConsentBoundary, ConsentGate, ConsentKind
from neurodesk.executor.runner import OutputChunk, ProcessHandle, StreamKind
from neurodesk.plan.builder import HomebrewProbe
from neurodesk.session import Conversation, OrchestrationSession


@dataclass
class RunCall:
    """One recorded ``run`` invocation."""
    command: str
    timeout_seconds: float
    stdin: Optional[bytes] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None


class RecordingRunner:
    """
    Stand-in for ProcessRunner.

    Each ``run`` pops the next scripted outcome ``(exit_code, stdout, stderr)``
    (or a callable returning one) and records the call.
    """

    shell = "/bin/bash"

    def __init__(self, results=None, default=(0, "", "")):
        self.results = list(results or [])
        self.default = default
        self.calls = []

    def run(self, command, timeout_seconds, stdin=None, cwd=None, env=None):
        self.calls.append(RunCall(command, timeout_seconds, stdin, cwd, env))
        outcome = self.results.pop(0) if self.results else self.default
        if callable(outcome):
            outcome = outcome(command)
        exit_code, stdout, stderr = outcome
        chunks = []
        if stdout:
            chunks.append(OutputChunk(StreamKind.STDOUT, stdout))
        if stderr:
            chunks.append(OutputChunk(StreamKind.STDERR, stderr))
        return ProcessHandle.finished(command, chunks, exit_code)

    @property
    def commands(self):
        return [call.command for call in self.calls]


class ScriptedBoundary(ConsentBoundary):
    """Resolves requests immediately from scripted answers."""

    def __init__(self, approvals=True, password: Optional[str] = "secret"):
        self.approvals = approvals
        self.password = password
        self.requests = []

    def present(self, request):
        self.requests.append(request)
        if request.kind is ConsentKind.PASSWORD:
            request.resolve(self.password)
            return
        if isinstance(self.approvals, list):
            answer = self.approvals.pop(0) if self.approvals else False
        else:
            answer = self.approvals
        request.resolve(answer)

    def prompts(self, kind: ConsentKind):
        return [r.prompt for r in self.requests if r.kind is kind]


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point HOME at a scratch directory and clear config overrides."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for var in (
        "NEURODESK_API_KEY",
        "NEURODESK_MODEL",
        "NEURODESK_PROVIDER",
        "NEURODESK_DEBUG",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield home
    reset_config()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    dir_path = tempfile.mkdtemp()
    yield dir_path
    # Cleanup
    import shutil
    shutil.rmtree(dir_path, ignore_errors=True)


@pytest.fixture
def mock_config():
    """Create a mock configuration object."""
    config = MagicMock()
    config.api.provider = "openai"
    config.api.api_key = "test-key"
    config.api.model = "gpt-4o-mini"
    config.api.temperature = 0.2
    config.executor.shell = "/bin/bash"
    config.executor.default_timeout = 300
    config.executor.step_output_chars = 4000
    config.executor.command_output_chars = 8000
    config.safety.blocked_patterns = ["rm -rf /"]
    config.safety.dangerous_patterns = []
    config.logging.enabled = False
    config.logging.level = "info"
    config.session.max_history = 100
    return config


@pytest.fixture
def make_runner():
    """Factory for RecordingRunner instances."""
    return RecordingRunner


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def brew_probe():
    """Probe for an Apple silicon Mac with Homebrew installed."""
    return HomebrewProbe(
        prefixes=["/opt/homebrew", "/usr/local"],
        exists=lambda path: path == "/opt/homebrew/bin/brew",
        machine=lambda: "arm64"
    )


@pytest.fixture
def no_brew_probe():
    """Probe for an Apple silicon Mac without Homebrew."""
    return HomebrewProbe(
        prefixes=["/opt/homebrew", "/usr/local"],
        exists=lambda path: False,
        machine=lambda: "arm64"
    )


@pytest.fixture
def session():
    return OrchestrationSession(conversation=Conversation(system_prompt=""))


@pytest.fixture
def boundary():
    return ScriptedBoundary()


@pytest.fixture
def gate(boundary):
    return ConsentGate(boundary=boundary, decision_timeout=5)


@pytest.fixture
def audit():
    return MagicMock()


# Markers for slow tests
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
