"""
Process runner for NeuroDesk.

Spawns shell commands and streams their output:
- stdout and stderr read on independent threads
- one ordered chunk stream tagged by stream kind
- watchdog that kills the process group on timeout
- exit code resolved only after both pipes are drained
"""

import logging
import os
import queue
import signal
import subprocess
import threading
from concurrent.futures import Future
from codecs import getincrementaldecoder
from dataclasses import dataclass
from enum import Enum
from typing import IO, Dict, Iterator, List, Optional

from ..config import get_config
from ..shell import NON_LOGIN_FLAGS

logger = logging.getLogger(__name__)

# Exit code reported when the shell could not be started at all.
SPAWN_FAILURE_EXIT_CODE = -1

# Exit code a shell uses for "command not found".
COMMAND_NOT_FOUND_EXIT_CODE = 127

_READ_SIZE = 4096
_END = object()


class StreamKind(Enum):
    """Which pipe a chunk came from."""
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputChunk:
    """A piece of decoded output from one stream."""
    stream: StreamKind
    text: str


@dataclass
class CommandResult:
    """Collected result of a finished command."""
    command: str
    stdout: str
    stderr: str
    output: str
    exit_code: int
    timed_out: bool = False
    spawn_failed: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def tool_missing(self) -> bool:
        """True when the shell reported the program as not found."""
        return (
            self.exit_code == COMMAND_NOT_FOUND_EXIT_CODE
            or "command not found" in self.stderr.lower()
        )


class ProcessHandle:
    """
    Live view of one command execution.

    Iterating yields ``OutputChunk`` objects until the process finished and
    its pipes are drained. The stream can be consumed once only.
    """

    def __init__(
        self,
        command: str,
        chunks: "queue.Queue",
        exit_code: Future,
        process: Optional[subprocess.Popen] = None
    ):
        self.command = command
        self.process = process
        self._chunks = chunks
        self._exit_code = exit_code
        self._consumed = False
        self._consume_lock = threading.Lock()
        self._timed_out = threading.Event()
        self._spawn_failed = False

    @classmethod
    def finished(
        cls,
        command: str,
        chunks: List[OutputChunk],
        exit_code: int,
        timed_out: bool = False,
        spawn_failed: bool = False
    ) -> "ProcessHandle":
        """Handle for a command whose output is already complete."""
        pending: "queue.Queue" = queue.Queue()
        for chunk in chunks:
            pending.put(chunk)
        pending.put(_END)
        future: Future = Future()
        future.set_result(exit_code)
        handle = cls(command, pending, future)
        handle._spawn_failed = spawn_failed
        if timed_out:
            handle._timed_out.set()
        return handle

    @property
    def timed_out(self) -> bool:
        return self._timed_out.is_set()

    @property
    def spawn_failed(self) -> bool:
        return self._spawn_failed

    def __iter__(self) -> Iterator[OutputChunk]:
        with self._consume_lock:
            if self._consumed:
                raise RuntimeError("Output stream of a process handle can only be consumed once")
            self._consumed = True
        return self._drain()

    def _drain(self) -> Iterator[OutputChunk]:
        while True:
            item = self._chunks.get()
            if item is _END:
                return
            yield item

    def wait(self, timeout: Optional[float] = None) -> int:
        """Block until the exit code is known."""
        return self._exit_code.result(timeout=timeout)

    def collect(self) -> CommandResult:
        """Consume the whole stream and return the collected result."""
        stdout: List[str] = []
        stderr: List[str] = []
        combined: List[str] = []
        for chunk in self:
            combined.append(chunk.text)
            if chunk.stream is StreamKind.STDOUT:
                stdout.append(chunk.text)
            else:
                stderr.append(chunk.text)
        exit_code = self.wait()
        return CommandResult(
            command=self.command,
            stdout="".join(stdout),
            stderr="".join(stderr),
            output="".join(combined),
            exit_code=exit_code,
            timed_out=self.timed_out,
            spawn_failed=self.spawn_failed
        )


class ProcessRunner:
    """Runs commands through a non-login, non-interactive shell."""

    def __init__(
        self,
        shell: Optional[str] = None,
        drain_timeout: Optional[float] = None,
        max_timeout: Optional[int] = None
    ):
        """
        Initialize the runner.

        Args:
            shell: Shell interpreter (defaults to config ``executor.shell``)
            drain_timeout: Seconds to wait for reader threads after exit
            max_timeout: Upper bound applied to every requested timeout
        """
        executor_cfg = get_config().executor
        self.shell = shell or executor_cfg.shell
        self.drain_timeout = drain_timeout if drain_timeout is not None else executor_cfg.drain_timeout
        self.max_timeout = max_timeout if max_timeout is not None else executor_cfg.max_timeout

    def build_argv(self, command: str) -> List[str]:
        """Argument vector used to spawn *command*."""
        return [self.shell, *NON_LOGIN_FLAGS, "-c", command]

    def run(
        self,
        command: str,
        timeout_seconds: float,
        stdin: Optional[bytes] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None
    ) -> ProcessHandle:
        """
        Start *command* and return a handle streaming its output.

        Args:
            command: Shell command line
            timeout_seconds: Seconds before the process group is killed (<= 0 disables)
            stdin: Bytes written once to the process, then stdin is closed
            cwd: Working directory
            env: Extra environment variables

        Returns:
            ProcessHandle; never raises for spawn failures
        """
        chunks: "queue.Queue" = queue.Queue()
        exit_code: Future = Future()

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        timeout = timeout_seconds
        if timeout and self.max_timeout:
            timeout = min(timeout, self.max_timeout)

        try:
            process = subprocess.Popen(
                self.build_argv(command),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=process_env,
                close_fds=True,
                # New process group so the watchdog can kill children too
                start_new_session=True
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to start process: {e}")
            return ProcessHandle.finished(
                command,
                [OutputChunk(StreamKind.STDERR, f"Failed to start process: {e}\n")],
                SPAWN_FAILURE_EXIT_CODE,
                spawn_failed=True
            )

        handle = ProcessHandle(command, chunks, exit_code, process=process)
        logger.debug(f"Started pid {process.pid}: {command[:200]}")

        # Armed before any pipe I/O so a blocked stdin write cannot outlive it
        watchdog: Optional[threading.Timer] = None
        if timeout and timeout > 0:
            watchdog = threading.Timer(timeout, self._on_timeout, args=(process, handle))
            watchdog.daemon = True
            watchdog.start()

        readers = [
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, StreamKind.STDOUT, chunks),
                name=f"stdout-{process.pid}",
                daemon=True
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, StreamKind.STDERR, chunks),
                name=f"stderr-{process.pid}",
                daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        threading.Thread(
            target=self._feed_stdin,
            args=(process, stdin),
            name=f"stdin-{process.pid}",
            daemon=True
        ).start()

        finisher = threading.Thread(
            target=self._finish,
            args=(process, handle, readers, watchdog, timeout, chunks, exit_code),
            name=f"wait-{process.pid}",
            daemon=True
        )
        finisher.start()

        return handle

    @staticmethod
    def _read_stream(pipe: IO[bytes], kind: StreamKind, chunks: "queue.Queue") -> None:
        """Forward decoded chunks from one pipe until EOF."""
        decoder = getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = pipe.read1(_READ_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    chunks.put(OutputChunk(kind, text))
            tail = decoder.decode(b"", final=True)
            if tail:
                chunks.put(OutputChunk(kind, tail))
        except (ValueError, OSError):
            # Pipe closed underneath us after a kill
            pass
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    @staticmethod
    def _feed_stdin(process: subprocess.Popen, data: Optional[bytes]) -> None:
        """
        Write *data* once and close stdin so the command sees EOF.

        Runs on its own thread. When the watchdog kills a command that never
        reads, the write fails with a broken pipe and the thread ends.
        """
        try:
            if data:
                process.stdin.write(data)
                process.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            logger.debug(f"stdin closed early for pid {process.pid}: {e}")
        finally:
            try:
                process.stdin.close()
            except (BrokenPipeError, OSError):
                pass

    @staticmethod
    def _on_timeout(process: subprocess.Popen, handle: ProcessHandle) -> None:
        if process.poll() is not None:
            return
        handle._timed_out.set()
        logger.warning(f"Killing pid {process.pid} after timeout")
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            process.kill()

    def _finish(
        self,
        process: subprocess.Popen,
        handle: ProcessHandle,
        readers: List[threading.Thread],
        watchdog: Optional[threading.Timer],
        timeout: float,
        chunks: "queue.Queue",
        exit_code: Future
    ) -> None:
        """Wait for exit, drain both pipes, then close the stream."""
        returncode = process.wait()
        if watchdog is not None:
            watchdog.cancel()

        for reader in readers:
            reader.join(timeout=self.drain_timeout)
            if reader.is_alive():
                logger.warning(f"{reader.name} still open after exit; closing stream")

        if handle.timed_out:
            chunks.put(OutputChunk(
                StreamKind.STDERR,
                f"\n[Process timed out after {timeout:g}s]\n"
            ))

        chunks.put(_END)
        logger.debug(f"pid {process.pid} exited with {returncode}")
        exit_code.set_result(returncode)
