"""
Plan data model.

A Plan is an ordered list of Steps built once from a parsed install
request and executed once. Steps run strictly in sequence.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple


class SafetyLevel(Enum):
    """How much user involvement a step needs before it runs."""
    SAFE = "safe"                   # Runs without a prompt
    NEEDS_CONSENT = "consent"       # Explicit approval
    PRIVILEGED = "privileged"       # Approval plus administrator credential

    @property
    def badge(self) -> str:
        return f"[{self.value}]"


class SudoMode(Enum):
    """How a sudo step uses the credential."""
    WRAP = "wrap"     # Run the whole step as root
    PRIME = "prime"   # Validate the credential, run as the invoking user


class TargetKind(Enum):
    """Kinds of install targets, in step generation order."""
    FORMULA = "formula"
    CASK = "cask"
    MAS_ID = "mas"
    GIT_URL = "git"


@dataclass(frozen=True)
class InstallTarget:
    """One thing the user asked to install."""
    kind: TargetKind
    value: str
    verify: bool = False


@dataclass(frozen=True)
class Step:
    """
    One shell command plus execution metadata.

    Args:
        title: Short label shown in summaries and progress turns
        command: Shell text, already quoted
        timeout_seconds: Watchdog timeout for this step
        safety: Safety classification
        requires_sudo: Run with the session's administrator credential
        stdin_provider: Produces bytes written to the command's stdin
        sudo_mode: How the credential is applied when ``requires_sudo``

    Raises:
        ValueError: if a sudo step is classified SAFE
    """
    title: str
    command: str
    timeout_seconds: int
    safety: SafetyLevel = SafetyLevel.SAFE
    requires_sudo: bool = False
    stdin_provider: Optional[Callable[[], bytes]] = field(default=None, compare=False)
    sudo_mode: SudoMode = SudoMode.WRAP

    def __post_init__(self):
        if self.requires_sudo and self.safety is SafetyLevel.SAFE:
            raise ValueError(f"Step '{self.title}' requires sudo but is marked safe")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Step '{self.title}' needs a positive timeout")


@dataclass(frozen=True)
class Plan:
    """An ordered, immutable sequence of steps with a description."""
    description: str
    steps: Tuple[Step, ...]

    def __post_init__(self):
        # Accept any sequence, store a tuple
        object.__setattr__(self, "steps", tuple(self.steps))

    @property
    def requires_consent(self) -> bool:
        """True when any step is above SAFE."""
        return any(step.safety is not SafetyLevel.SAFE for step in self.steps)

    @property
    def requires_sudo(self) -> bool:
        return any(step.requires_sudo for step in self.steps)

    def __len__(self) -> int:
        return len(self.steps)
