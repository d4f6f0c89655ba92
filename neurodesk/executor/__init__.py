"""Process execution and the synthesized-command workspace."""

from .runner import CommandResult, OutputChunk, ProcessHandle, ProcessRunner, StreamKind
from .query import BashQueryExecutor, BashQueryResult, OutputFile

__all__ = [
    "CommandResult",
    "OutputChunk",
    "ProcessHandle",
    "ProcessRunner",
    "StreamKind",
    "BashQueryExecutor",
    "BashQueryResult",
    "OutputFile",
]
