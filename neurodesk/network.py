"""Network inspection tasks."""

import logging
from dataclasses import replace
from typing import Optional

from .executor.runner import COMMAND_NOT_FOUND_EXIT_CODE, CommandResult, ProcessRunner
from .plan.builder import HomebrewProbe
from .shell import path_prefix_export, quote

logger = logging.getLogger(__name__)

NMAP_INSTALL_HINT = (
    "\n\nHint: `nmap` is not installed or not found in PATH. "
    "You can install it using Homebrew:\n  brew install nmap\n"
)


def scan_host(
    host: str,
    timeout: float = 60,
    runner: Optional[ProcessRunner] = None,
    probe: Optional[HomebrewProbe] = None
) -> CommandResult:
    """
    Service scan of *host* with nmap.

    Returns the collected result. When nmap is missing an install hint is
    appended to its combined output.
    """
    host = host.strip()
    if not host:
        raise ValueError("host must not be empty")

    runner = runner or ProcessRunner()
    probe = probe or HomebrewProbe()
    command = path_prefix_export(probe.path_directories()) + f"nmap -sV -Pn {quote(host)}"

    logger.info(f"Scanning host {host}")
    result = runner.run(command, timeout).collect()

    if result.exit_code == COMMAND_NOT_FOUND_EXIT_CODE or "command not found" in result.output:
        result = replace(result, output=result.output + NMAP_INSTALL_HINT)
    elif not result.success:
        logger.warning(f"nmap exited with {result.exit_code} scanning {host}")
    return result
