"""Tests for request orchestration."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from neurodesk.consent import ConsentGate, ConsentKind
from neurodesk.errors import MissingCredentialError
from neurodesk.orchestrator import TIME_COMMAND, Orchestrator
from neurodesk.providers.base import ChatCompletionClient, ImageUpload, StreamResponse
from neurodesk.ratelimit import SendBudget

from conftest import RecordingRunner, ScriptedBoundary


class FakeClient(ChatCompletionClient):
    """Streams scripted tokens."""

    provider_name = "fake"

    def __init__(self, tokens=(), error=None):
        self.tokens = list(tokens)
        self.error = error
        self.calls = []

    def stream_complete(self, model, messages, temperature=0.2, images=None):
        self.calls.append({"model": model, "messages": messages, "images": images})
        if self.error:
            raise self.error
        return StreamResponse(iter(self.tokens))


@pytest.fixture
def make_orchestrator(session, brew_probe, audit, temp_dir):
    def factory(results=None, approvals=True, **kwargs):
        boundary = ScriptedBoundary(approvals=approvals)
        orchestrator = Orchestrator(
            session=session,
            gate=ConsentGate(boundary=boundary, decision_timeout=5),
            runner=kwargs.pop("runner", None) or RecordingRunner(results=results),
            probe=brew_probe,
            audit=audit,
            tree_output_dir=temp_dir,
            tree_binary_finder=lambda: None,
            **kwargs
        )
        orchestrator.boundary = boundary
        return orchestrator
    return factory


def turns(orchestrator):
    return [(m.role, m.content) for m in orchestrator.conversation.messages]


class TestTimeIntent:
    """Test the time request."""

    def test_success(self, make_orchestrator, audit):
        orchestrator = make_orchestrator(results=[(0, "14:03:22 CET\n", "")])

        assert orchestrator.handle_request("What time is it?") is True
        assert orchestrator.runner.commands == [TIME_COMMAND]
        assert turns(orchestrator) == [
            ("user", 'bash$ date +"%H:%M:%S %Z"'),
            ("assistant", "The current time is: 14:03:22 CET"),
        ]
        audit.log_user_query.assert_called_once_with("What time is it?")

    def test_failure(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(1, "", "date: illegal option\n")])
        assert orchestrator.handle_request("time") is False
        assert turns(orchestrator)[-1] == (
            "assistant", "Command failed (exit 1). Output:\ndate: illegal option"
        )

    def test_blank_request(self, make_orchestrator):
        orchestrator = make_orchestrator()
        assert orchestrator.handle_request("   ") is False
        assert turns(orchestrator) == []


class TestTreeIntent:
    """Test tree listings saved to disk."""

    def test_desktop_tree(self, make_orchestrator, temp_dir, isolated_home):
        orchestrator = make_orchestrator(results=[(0, "listing\n", "")])

        assert orchestrator.handle_request("Create a tree of everything on my desktop") is True

        destination = Path(temp_dir) / "filesystem_tree.txt"
        assert destination.read_text() == "listing\n"
        prompt = orchestrator.boundary.prompts(ConsentKind.APPROVAL)[0]
        assert prompt.startswith(f"I will generate a tree listing of {isolated_home} (depth 3) by running:")
        assert prompt.endswith(f"Then I will save it to {destination}.")
        assert orchestrator.runner.calls[0].timeout_seconds == 180
        assert turns(orchestrator)[-1] == (
            "assistant", f"Saved the tree listing to:\n{destination} (8 bytes)"
        )

    def test_root_tree(self, make_orchestrator, temp_dir):
        orchestrator = make_orchestrator(results=[(0, "/\n  Applications\n", "")])

        assert orchestrator.handle_request("show the tree from the root directory depth 2") is True
        assert orchestrator.runner.calls[0].timeout_seconds == 300
        assert orchestrator.runner.commands[0].startswith("find '/' -maxdepth 2 -print")
        assert (Path(temp_dir) / "root_structure.txt").exists()

    def test_declined(self, make_orchestrator, temp_dir):
        orchestrator = make_orchestrator(approvals=False)

        assert orchestrator.handle_request("make a tree of my desktop") is False
        assert orchestrator.runner.calls == []
        assert turns(orchestrator) == [("assistant", "Cancelled. No files were created.")]
        assert list(Path(temp_dir).iterdir()) == []

    def test_listing_failure(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(2, "", "find: bad\n")])
        assert orchestrator.handle_request("make a tree of my desktop") is False
        assert turns(orchestrator)[-1] == (
            "assistant", "Failed to generate the tree listing (exit 2).\n\nstderr/stdout:\nfind: bad"
        )

    def test_save_failure(self, make_orchestrator, temp_dir):
        blocker = Path(temp_dir) / "blocker"
        blocker.write_text("not a directory")
        orchestrator = make_orchestrator(results=[(0, "listing\n", "")])
        orchestrator.tree_output_dir = str(blocker)

        assert orchestrator.handle_request("make a tree of my desktop") is False
        assert turns(orchestrator)[-1][1].startswith("Failed to save file: ")


class TestRouting:
    """Test the intent, plan, synthesis order."""

    def test_install_plan(self, make_orchestrator):
        orchestrator = make_orchestrator()

        assert orchestrator.handle_request("install htop and jq") is True
        assert len(orchestrator.runner.calls) == 3
        assert orchestrator.boundary.requests == []
        assert turns(orchestrator)[-1] == ("assistant", "Completed: Install formulae: htop, jq")

    def test_falls_back_to_synthesis(self, make_orchestrator):
        synthesizer = MagicMock()
        synthesizer.compose_and_run.return_value = True
        orchestrator = make_orchestrator(synthesizer=synthesizer)

        assert orchestrator.handle_request("how much disk space is left", timeout=5) is True
        synthesizer.compose_and_run.assert_called_once_with("how much disk space is left", None, 5)
        assert orchestrator.runner.calls == []

    def test_synthesis_end_to_end(self, make_orchestrator):
        runner = RecordingRunner(results=[(0, "", ""), (0, "Filesystem  Size\n", "")])
        orchestrator = make_orchestrator(runner=runner, client=FakeClient(["df -h"]))

        assert orchestrator.handle_request("how much disk space is left") is True
        assert runner.commands[1].endswith('"$PATH"; df -h')
        assert "bash$ df -h" in orchestrator.boundary.prompts(ConsentKind.APPROVAL)[0]

    def test_unexpected_error_becomes_turn(self, make_orchestrator, audit):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("kaboom")
        orchestrator = make_orchestrator(classifier=classifier)

        assert orchestrator.handle_request("anything") is False
        assert turns(orchestrator) == [("assistant", "kaboom")]
        audit.log_error.assert_called_once_with("handle_request", "RuntimeError: kaboom")

    def test_request_supersedes_stream(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(0, "12:00:00 UTC\n", "")])
        stream = StreamResponse(["never read"])
        orchestrator._active_stream = stream

        orchestrator.handle_request("time")
        assert stream.closed


class TestCommands:
    """Test the install and scan entry points."""

    def test_install_system_wide_declined(self, make_orchestrator):
        orchestrator = make_orchestrator(approvals=False)

        assert orchestrator.install_system_wide("wget") is False
        prompt = orchestrator.boundary.prompts(ConsentKind.APPROVAL)[0]
        assert "Add Homebrew to system PATH" in prompt
        assert "verify wget" in prompt
        assert orchestrator.runner.calls == []

    def test_install_system_wide_without_plan(self, make_orchestrator):
        builder = MagicMock()
        builder.build.return_value = None
        orchestrator = make_orchestrator(builder=builder)

        assert orchestrator.install_system_wide("thing") is False
        assert turns(orchestrator) == [
            ("assistant", "Sorry, I couldn't build an install plan for thing.")
        ]

    def test_scan(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(0, "80/tcp open http\n", "")])
        assert orchestrator.scan("10.0.0.1") is True
        assert turns(orchestrator) == [("assistant", "80/tcp open http")]

    def test_scan_without_nmap(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(127, "", "bash: nmap: command not found\n")])
        assert orchestrator.scan("10.0.0.1") is False
        assert "brew install nmap" in turns(orchestrator)[-1][1]

    def test_scan_failure_exit(self, make_orchestrator):
        orchestrator = make_orchestrator(results=[(1, "Failed to resolve \"nohost\".\n", "")])
        assert orchestrator.scan("nohost") is False
        assert turns(orchestrator) == [("assistant", "Failed to resolve \"nohost\".")]


class TestSendChat:
    """Test plain chat turns."""

    def test_reply(self, make_orchestrator):
        client = FakeClient(["Hel", "lo"])
        orchestrator = make_orchestrator(client=client)
        seen = []

        reply = orchestrator.send_chat(
            "hi", images=[ImageUpload("shot.png", b"1234")], on_token=seen.append
        )

        assert reply == "Hello"
        assert seen == ["Hel", "lo"]
        messages = orchestrator.conversation.messages
        assert messages[0].attachments[0].size == 4
        assert turns(orchestrator) == [("user", "hi"), ("assistant", "Hello")]
        assert client.calls[0]["messages"] == [{"role": "user", "content": "hi"}]

    def test_blocked(self, make_orchestrator):
        budget = SendBudget(limit=1)
        budget.before_send()
        client = FakeClient(["x"])
        orchestrator = make_orchestrator(client=client, budget=budget)

        assert orchestrator.send_chat("hi") is None
        assert client.calls == []
        assert turns(orchestrator)[-1] == ("assistant", "Send blocked by rate limit.")

    def test_error_turn(self, make_orchestrator):
        orchestrator = make_orchestrator(client=FakeClient(error=MissingCredentialError("OpenAI")))

        assert orchestrator.send_chat("hi") is None
        assert turns(orchestrator)[-1] == (
            "assistant",
            "API key for OpenAI missing.\n"
            "Suggestion: Set NEURODESK_API_KEY or add api_key to your config file."
        )

    def test_cancel_keeps_partial_reply(self, make_orchestrator):
        orchestrator = make_orchestrator(client=FakeClient(["part", "ial", " reply"]))

        reply = orchestrator.send_chat("hi", on_token=lambda token: orchestrator.cancel_stream())

        assert reply == "part"
        assert orchestrator._active_stream is None

    def test_empty_reply_adds_no_turn(self, make_orchestrator):
        orchestrator = make_orchestrator(client=FakeClient([]))
        assert orchestrator.send_chat("hi") is None
        assert turns(orchestrator) == [("user", "hi")]
