"""
Workspace executor for synthesized commands.

Each run gets its own working directory. Uploaded images and files are
written into it and exposed through environment variables. After the run,
new files in the working directory are reported with size and MIME type.
"""

import logging
import mimetypes
import os
import re
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from ..config import get_config
from ..plan.builder import HomebrewProbe
from ..providers.base import ImageUpload
from ..shell import path_prefix_export, quote
from .runner import ProcessRunner

logger = logging.getLogger(__name__)

# Names that are not installable programs
SHELL_WORDS = frozenset({
    "cd", "echo", "printf", "export", "set", "unset", "source", ".", "eval", "exec",
    "for", "while", "until", "if", "case", "function", "time", "test", "[", "[[",
    "true", "false", "read", "command", "type", "builtin", "alias", "ulimit", "umask",
    "pwd", "exit", "return", "trap", "wait", "kill", "let", "declare", "local", "shift",
    "{", "(", "!", "sudo", "env", "nohup", "xargs",
})

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def format_size(size: int) -> str:
    """Human-readable byte count using decimal units."""
    if size < 1000:
        return f"{size} bytes"
    value = float(size)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1000.0
        if value < 1000 or unit == "TB":
            return f"{value:.1f} {unit}"
    return f"{size} bytes"


def guess_mime_type(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


def primary_tool(command: str) -> Optional[str]:
    """
    The program a command line starts with, if it is an installable name.

    Leading variable assignments are skipped. Shell keywords and builtins
    return None.
    """
    try:
        words = shlex.split(command, posix=True)
    except ValueError:
        words = command.split()
    for word in words:
        if _ASSIGNMENT_RE.match(word):
            continue
        name = os.path.basename(word) if "/" in word else word
        if name in SHELL_WORDS or not _TOOL_NAME_RE.match(name):
            return None
        return name
    return None


@dataclass
class OutputFile:
    """A file a command left in its working directory."""
    filename: str
    path: str
    size: int
    mime_type: str

    def describe(self) -> str:
        return f"• {self.filename} - {format_size(self.size)} - {self.mime_type}"


@dataclass
class BashQueryResult:
    """Collected result of one workspace run."""
    command: str
    stdout: str
    stderr: str
    exit_code: int
    working_directory: str
    output_files: List[OutputFile] = field(default_factory=list)
    installed_tools: List[str] = field(default_factory=list)
    timed_out: bool = False


class BashWorkspace:
    """Per-run working directory holding uploads and generated files."""

    def __init__(self, root: Optional[str] = None):
        if root:
            Path(root).expanduser().mkdir(parents=True, exist_ok=True)
            root = str(Path(root).expanduser())
        self.path = Path(tempfile.mkdtemp(prefix="neurodesk-bash-", dir=root))
        self.image_dir = self.path / "images"
        self.file_dir = self.path / "files"
        self.image_dir.mkdir()
        self.file_dir.mkdir()

    @staticmethod
    def _safe_name(name: str, index: int, used: Set[str]) -> str:
        base = os.path.basename(name.replace("\\", "/")).strip() or f"upload_{index}"
        if base in (".", ".."):
            base = f"upload_{index}"
        candidate = base
        while candidate in used:
            candidate = f"{index}_{base}"
            index += 1
        used.add(candidate)
        return candidate

    def add_uploads(self, uploads: Sequence[ImageUpload]) -> Dict[str, str]:
        """Write uploads and return the environment describing them."""
        images: List[str] = []
        files: List[str] = []
        used_images: Set[str] = set()
        used_files: Set[str] = set()

        for index, upload in enumerate(uploads, start=1):
            mime = upload.mime_type or guess_mime_type(upload.filename)
            if mime.startswith("image/"):
                target = self.image_dir / self._safe_name(upload.filename, index, used_images)
                images.append(str(target))
            else:
                target = self.file_dir / self._safe_name(upload.filename, index, used_files)
                files.append(str(target))
            target.write_bytes(upload.data)

        env = {
            "BASH_WORK_DIR": str(self.path),
            "IMAGE_DIR": str(self.image_dir),
            "IMAGE_COUNT": str(len(images)),
            "FILE_DIR": str(self.file_dir),
            "FILE_COUNT": str(len(files)),
        }
        for i, image in enumerate(images, start=1):
            env[f"IMAGE_{i}"] = image
        for i, path in enumerate(files, start=1):
            env[f"FILE_{i}"] = path
        return env

    def snapshot(self) -> Set[Path]:
        return {p for p in self.path.rglob("*") if p.is_file()}

    def new_files(self, before: Set[Path]) -> List[OutputFile]:
        """Files created since *before*, excluding the upload folders' originals."""
        found = []
        for path in sorted(self.snapshot() - before):
            try:
                size = path.stat().st_size
            except OSError:
                continue
            found.append(OutputFile(
                filename=str(path.relative_to(self.path)),
                path=str(path),
                size=size,
                mime_type=guess_mime_type(path.name)
            ))
        return found


class BashQueryExecutor:
    """Runs one command inside a fresh workspace."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        probe: Optional[HomebrewProbe] = None,
        workspace_root: Optional[str] = None,
        auto_install: Optional[bool] = None
    ):
        config = get_config().executor
        self.runner = runner or ProcessRunner()
        self.probe = probe or HomebrewProbe()
        self.workspace_root = workspace_root or config.workspace_root
        self.auto_install = config.auto_install_tools if auto_install is None else auto_install
        self.default_timeout = config.default_timeout

    def _run(self, command: str, timeout: float, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        prefixed = path_prefix_export(self.probe.path_directories()) + command
        return self.runner.run(prefixed, timeout, cwd=cwd, env=env).collect()

    def is_available(self, tool: str, timeout: float = 10) -> bool:
        return self._run(f"command -v {quote(tool)} >/dev/null 2>&1", timeout).exit_code == 0

    def ensure_tool(self, command: str, timeout: float) -> tuple:
        """
        Install the command's primary tool with Homebrew when it is missing.

        Returns:
            (installed tool names, diagnostic text for stderr)
        """
        tool = primary_tool(command)
        if not tool or self.is_available(tool):
            return [], ""
        if not self.is_available("brew"):
            return [], f"Homebrew is not installed or not found in PATH; cannot install tool {tool}.\n"

        logger.info(f"Installing missing tool {tool} with Homebrew")
        result = self._run(f"brew install {quote(tool)}", timeout)
        if result.exit_code == 0:
            return [tool], result.stderr
        return [], result.stderr

    def execute(
        self,
        command: str,
        timeout: Optional[float] = None,
        uploads: Optional[Sequence[ImageUpload]] = None
    ) -> BashQueryResult:
        """
        Run *command* in a new workspace.

        Args:
            command: Command line, without PATH prefix
            timeout: Seconds before the command is killed
            uploads: Images and files to place in the workspace
        """
        timeout = timeout or self.default_timeout
        workspace = BashWorkspace(self.workspace_root)
        env = workspace.add_uploads(uploads or [])

        installed: List[str] = []
        notes = ""
        if self.auto_install:
            installed, notes = self.ensure_tool(command, timeout)

        before = workspace.snapshot()
        result = self._run(command, timeout, cwd=str(workspace.path), env=env)

        return BashQueryResult(
            command=command,
            stdout=result.stdout,
            stderr=notes + result.stderr,
            exit_code=result.exit_code,
            working_directory=str(workspace.path),
            output_files=workspace.new_files(before),
            installed_tools=installed,
            timed_out=result.timed_out
        )
