"""
Safety guardrails for NeuroDesk.

Screens model-synthesized command lines before they are offered for
approval:
- Forbidden commands are refused outright
- Dangerous commands carry a warning into the consent prompt
"""

import logging
import re
from enum import Enum
from typing import Optional
from dataclasses import dataclass

from ..config import get_config

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    """Risk level of a command."""
    SAFE = "safe"           # Offered with the normal prompt
    DANGEROUS = "dangerous" # Offered with a warning line
    FORBIDDEN = "forbidden" # Never offered


@dataclass
class SafetyCheck:
    """Result of a safety check."""
    risk_level: RiskLevel
    is_allowed: bool
    reason: Optional[str] = None
    user_warning: Optional[str] = None


class SafetyGuard:
    """Guards against destructive synthesized commands."""

    # Commands that are always blocked
    FORBIDDEN_PATTERNS = [
        (r"rm\s+(-[rf]+\s+)?/\s*$", "Deleting the entire system"),
        (r"rm\s+-rf\s+/\*", "Deleting all files on the system"),
        (r"rm\s+-rf\s+~/?\s*$", "Deleting your home folder"),
        (r"diskutil\s+(erase|zero|secureErase)", "Erasing a disk"),
        (r"mkfs\.", "Formatting a disk"),
        (r"dd\s+.*of=/dev/(r?disk|[hs]d)", "Overwriting disk contents"),
        (r">\s*/dev/r?disk\d", "Destroying disk data"),
        (r":\(\)\{\s*:\|:&\s*\};:", "Starting a fork bomb that crashes the system"),
        (r"chmod\s+-R\s+777\s+/\s*$", "Making all system files insecure"),
        (r"csrutil\s+disable", "Disabling System Integrity Protection"),
        (r"curl.*\|\s*(sudo\s+)?(ba|z)?sh\b", "Running untrusted code from internet"),
        (r"wget.*\|\s*(sudo\s+)?(ba|z)?sh\b", "Running untrusted code from internet"),
    ]

    # Commands that get a warning in the consent prompt
    DANGEROUS_PATTERNS = [
        (r"rm\s+-[a-z]*r", "Delete folders and their contents"),
        (r"\brm\s+", "Delete files"),
        (r"\bsudo\b", "Run as administrator"),
        (r"chmod\s+(-R\s+)?777", "Make files accessible to everyone"),
        (r"\bchown\b", "Change file ownership"),
        (r"\bshutdown\b|\breboot\b|\bhalt\b", "Shut down or restart the computer"),
        (r"launchctl\s+(unload|bootout|remove)", "Stop a system service"),
        (r"\bkillall\b|\bkill\s+-9", "Force stop programs"),
        (r"brew\s+(uninstall|remove|rm)\b", "Remove software"),
        (r"defaults\s+(write|delete)", "Change system preferences"),
        (r"\bsrm\b|\bshred\b", "Securely erase files"),
        (r">\s*~/\.", "Overwrite a settings file in your home folder"),
    ]

    def __init__(self):
        """Initialize the safety guard."""
        self.config = get_config()
        self._compile_patterns()

    def _compile_patterns(self) -> None:
        """Compile regex patterns for efficiency."""
        self._forbidden = [
            (re.compile(pattern, re.IGNORECASE), reason)
            for pattern, reason in self.FORBIDDEN_PATTERNS
        ]

        # Add config-based blocked patterns
        for pattern in self.config.safety.blocked_patterns:
            try:
                self._forbidden.append(
                    (re.compile(pattern, re.IGNORECASE), "Running a command blocked by your configuration")
                )
            except re.error:
                logger.warning(f"Ignoring invalid blocked pattern: {pattern!r}")

        self._dangerous = [
            (re.compile(pattern, re.IGNORECASE), reason)
            for pattern, reason in self.DANGEROUS_PATTERNS
        ]

        # Add config-based dangerous patterns
        for pattern in self.config.safety.dangerous_patterns:
            try:
                self._dangerous.append(
                    (re.compile(pattern, re.IGNORECASE), "Run a command flagged by your configuration")
                )
            except re.error:
                logger.warning(f"Ignoring invalid dangerous pattern: {pattern!r}")

    def check_command(self, command: str) -> SafetyCheck:
        """
        Check if a command may be offered for execution.

        Args:
            command: The shell command to check

        Returns:
            SafetyCheck with risk assessment
        """
        for pattern, reason in self._forbidden:
            if pattern.search(command):
                return SafetyCheck(
                    risk_level=RiskLevel.FORBIDDEN,
                    is_allowed=False,
                    reason=reason,
                    user_warning=f"I can't run that. It would mean {reason.lower()}, "
                                 "which is blocked for your safety."
                )

        for pattern, reason in self._dangerous:
            if pattern.search(command):
                return SafetyCheck(
                    risk_level=RiskLevel.DANGEROUS,
                    is_allowed=True,
                    reason=reason,
                    user_warning=f"Warning: this command may {reason[0].lower() + reason[1:]}."
                )

        return SafetyCheck(
            risk_level=RiskLevel.SAFE,
            is_allowed=True
        )
