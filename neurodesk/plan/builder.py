"""
Install plan construction.

Turns a free-text install request into a Plan. The builder only reads the
text and a filesystem probe, so the same text on the same machine always
yields the same Plan. Every value placed into shell text goes through
``neurodesk.shell.render``.
"""

import logging
import os
import platform
import re
from typing import Callable, Dict, List, Optional, Sequence

from ..config import get_config
from ..shell import expand_tilde, render
from .models import InstallTarget, Plan, SafetyLevel, Step, SudoMode, TargetKind

logger = logging.getLogger(__name__)


# Request shapes

INSTALL_VERB_RE = re.compile(r"\b(?:install|set\s+up|setup|add|get)\b", re.IGNORECASE)
_LEADING_VERB_RE = re.compile(r"^(?:install|set\s+up|setup|add|get)\s+", re.IGNORECASE)

SYSTEM_WIDE_PHRASES = (
    "system-wide",
    "system wide",
    "all users",
    "for everyone",
    "everyone's path",
    "in path for everyone",
    "available to all users",
    "usable by all users",
    "add to path",
    "/etc/paths.d",
)

VERIFY_PHRASES = ("then verify", "and verify", "check version", "verify version")

PACKAGE_MANAGER_HINTS = ("brew", "homebrew", "/opt/homebrew", "/usr/local")

MAS_LABEL_RE = re.compile(r"(?:mas\s+id|app\s*store\s*id)[:\s]+(\d+)", re.IGNORECASE)
MAS_BARE_ID_RE = re.compile(r"\b(\d{6,})\b")
MAS_FRAGMENT_RE = re.compile(r"^\d{6,}$")

GIT_URL_RE = re.compile(r"(https?://[A-Za-z0-9.\-_/]+\.git)\b")
GIT_DEST_RE = re.compile(r"\bdest(?:ination)?[:\s]+(\S+)", re.IGNORECASE)
GIT_INSTALL_CMD_RE = re.compile(r"\binstall(?:\s+cmd|ation\s+cmd|:)[:\s]+(.+)$", re.IGNORECASE)

_VERIFY_CLAUSE_RE = re.compile(
    r"[,\s]*\b(?:(?:then|and)\s+verify|(?:and\s+|then\s+)?(?:check|verify)\s+(?:the\s+)?version)\b.*$",
    re.IGNORECASE | re.DOTALL
)
_TRAILING_CONNECTOR_RE = re.compile(
    r"(?:[\s,.;:!?]+|\b(?:and|then|make\s+(?:it|them)|so\s+(?:it|they)\s+(?:is|are))\b)+$",
    re.IGNORECASE
)
_FRAGMENT_SPLIT_RE = re.compile(r",|\s+and\s+", re.IGNORECASE)

# Common app names mapped to cask tokens
APP_ALIASES: Dict[str, str] = {
    "iterm2": "iterm2",
    "iterm": "iterm2",
    "visual studio code": "visual-studio-code",
    "vscode": "visual-studio-code",
    "google chrome": "google-chrome",
    "chrome": "google-chrome",
    "slack": "slack",
    "docker": "docker",
    "docker desktop": "docker",
    "rectangle": "rectangle",
    "postman": "postman",
}

GUI_CASKS = frozenset({
    "visual-studio-code",
    "iterm2",
    "google-chrome",
    "slack",
    "docker",
    "postman",
    "rectangle",
})

# Repositories with a well-known installer script
KNOWN_GIT_INSTALLERS: Dict[str, str] = {
    "junegunn/fzf": "./install --all",
}


# Step scripts

BREW_UPDATE = "@brew update"

BREW_FORMULA = """\
if @brew list --versions @name >/dev/null 2>&1; then
  @brew upgrade @name || true
else
  @brew install @name
fi"""

BREW_CASK = """\
if @brew list --cask --versions @name >/dev/null 2>&1; then
  @brew upgrade --cask @name || true
else
  @brew install --cask @name
fi"""

VERIFY_BINARY = """\
command -v @name >/dev/null 2>&1 || exit 1
@name --version >/dev/null 2>&1 || true"""

HOMEBREW_BOOTSTRAP = 'NONINTERACTIVE=1 /bin/bash -c "$(curl -fsSL @url)"'

PATHS_FILE_HEAD = """\
set -e
tmp="$(mktemp)"; trap 'rm -f "$tmp"' EXIT"""

PATHS_FILE_ENTRY = 'if [ -d @dir ]; then echo @dir >> "$tmp"; fi'

PATHS_FILE_INSTALL = """\
mkdir -p "$(dirname @target)"
install -m 0644 "$tmp" @target"""

ENSURE_MAS = """\
if command -v mas >/dev/null 2>&1; then exit 0; fi
@brew install mas"""

MAS_INSTALL = """\
if mas list | awk '{print $1}' | grep -qx @id; then
  mas upgrade @id || true
else
  mas install @id
fi"""

ENSURE_CLT = """\
if command -v git >/dev/null 2>&1; then exit 0; fi
if /usr/bin/xcode-select -p >/dev/null 2>&1; then exit 0; fi
touch /tmp/.com.apple.dt.CommandLineTools.installondemand.in-progress
softwareupdate -l >/dev/null 2>&1 || true
PKG="$(softwareupdate -l 2>/dev/null | awk -F'*' '/Command Line Tools/ {print $2}' | sed -e 's/^ *//' | tail -n1)"
if [ -n "$PKG" ]; then softwareupdate -i "$PKG" -a || true; fi
rm -f /tmp/.com.apple.dt.CommandLineTools.installondemand.in-progress || true"""

ENSURE_GIT_BREW = """\
if command -v git >/dev/null 2>&1; then exit 0; fi
@brew install git"""

GIT_CLONE_OR_RESET = """\
set -e
mkdir -p @dest
if [ -d @checkout/.git ]; then
  git -C @checkout fetch --all --prune
  git -C @checkout reset --hard origin/HEAD || true
else
  git clone --depth=1 @url @checkout
fi"""

GIT_RUN_INSTALL = "cd @checkout && /bin/bash -c @cmd"


class HomebrewProbe:
    """
    Filesystem view of the Homebrew installation.

    Args:
        prefixes: Well-known prefixes, probed in order
        exists: Path existence check (injectable for tests)
        machine: Returns the CPU architecture name
    """

    def __init__(
        self,
        prefixes: Optional[Sequence[str]] = None,
        exists: Callable[[str], bool] = os.path.exists,
        machine: Callable[[], str] = platform.machine
    ):
        if prefixes is None:
            prefixes = get_config().install.homebrew_prefixes
        self.prefixes = list(prefixes)
        self._exists = exists
        self._machine = machine

    def prefix(self) -> str:
        """Installed prefix, or the one Homebrew would pick for this CPU."""
        for prefix in self.prefixes:
            if self._exists(f"{prefix}/bin/brew"):
                return prefix
        if self._machine() == "arm64":
            return "/opt/homebrew"
        return "/usr/local"

    def brew_installed(self) -> bool:
        candidates = [self.prefix(), *self.prefixes]
        return any(self._exists(f"{prefix}/bin/brew") for prefix in candidates)

    def brew_binary(self) -> str:
        """Absolute path of brew when present, else the bare name."""
        path = f"{self.prefix()}/bin/brew"
        return path if self._exists(path) else "brew"

    def bin_directories(self) -> List[str]:
        """bin and sbin directories of every known prefix, detected prefix first."""
        prefixes = [self.prefix()] + [p for p in self.prefixes if p != self.prefix()]
        dirs: List[str] = []
        for prefix in prefixes:
            dirs.extend([f"{prefix}/bin", f"{prefix}/sbin"])
        return dirs

    def path_directories(self) -> List[str]:
        """Directories exported ahead of PATH for every plan command."""
        prefix = self.prefix()
        dirs = [f"{prefix}/bin", f"{prefix}/sbin", "/usr/local/bin", "/usr/local/sbin"]
        return list(dict.fromkeys(dirs))


def is_system_wide_request(lowered: str) -> bool:
    return any(phrase in lowered for phrase in SYSTEM_WIDE_PHRASES)


def is_verify_request(lowered: str) -> bool:
    return any(phrase in lowered for phrase in VERIFY_PHRASES)


def normalize_app_name(name: str) -> str:
    """Map a free-text app name through the alias table."""
    key = " ".join(name.lower().split())
    return APP_ALIASES.get(key, name.strip())


def is_likely_cask(token: str) -> bool:
    lowered = token.lower()
    return " " in lowered or lowered in GUI_CASKS


def default_git_install_command(url: str) -> Optional[str]:
    lowered = url.lower()
    for repo, command in KNOWN_GIT_INSTALLERS.items():
        if repo in lowered:
            return command
    return None


def repository_name(url: str) -> str:
    """Last path segment of a git URL without ``.git``."""
    name = url.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name or "repo"


def _strip_clauses(tail: str) -> str:
    """Drop verify and system-wide clauses from the end of a target list."""
    tail = _VERIFY_CLAUSE_RE.sub("", tail)
    lowered = tail.lower()
    cuts = [lowered.find(phrase) for phrase in SYSTEM_WIDE_PHRASES if phrase in lowered]
    if cuts:
        tail = tail[:min(cuts)]
    return _TRAILING_CONNECTOR_RE.sub("", tail)


def parse_targets(text: str) -> List[str]:
    """
    Split the part of *text* after the first install verb into target names.

    Example:
        "install htop, jq and wget then verify" -> ["htop", "jq", "wget"]
    """
    match = INSTALL_VERB_RE.search(text)
    if not match:
        return []
    tail = _strip_clauses(text[match.end():])

    targets = []
    for fragment in _FRAGMENT_SPLIT_RE.split(tail):
        fragment = fragment.strip().strip(".!?;:").strip()
        while _LEADING_VERB_RE.match(fragment):
            fragment = _LEADING_VERB_RE.sub("", fragment, count=1).strip()
        if fragment:
            targets.append(fragment)
    return targets


def classify_target(fragment: str, verify: bool = False) -> Optional[InstallTarget]:
    """Classify one target name as cask, MAS ID or formula."""
    if fragment.lower().startswith("cask "):
        token = fragment[5:].strip()
        return InstallTarget(TargetKind.CASK, token) if token else None
    if MAS_FRAGMENT_RE.match(fragment):
        return InstallTarget(TargetKind.MAS_ID, fragment)
    name = normalize_app_name(fragment)
    if is_likely_cask(name):
        return InstallTarget(TargetKind.CASK, name)
    return InstallTarget(TargetKind.FORMULA, name, verify=verify)


class InstallPlanBuilder:
    """Builds install plans from free text."""

    def __init__(self, probe: Optional[HomebrewProbe] = None):
        """
        Initialize the builder.

        Args:
            probe: Homebrew filesystem probe (defaults to the real filesystem)
        """
        self.probe = probe or HomebrewProbe()
        self.install_config = get_config().install

    def build(self, text: str) -> Optional[Plan]:
        """
        Build a Plan for *text*, or None when it is not an install request.

        Shapes are checked in order: system-wide PATH only, App Store ID,
        git URL, then a list of formula/cask names.
        """
        lowered = text.lower()
        system_wide = is_system_wide_request(lowered)
        if not INSTALL_VERB_RE.search(text) and not system_wide:
            return None

        if (
            system_wide
            and any(hint in lowered for hint in PACKAGE_MANAGER_HINTS)
            and "install " not in lowered
        ):
            return self.path_only_plan()

        mas_id = self._find_mas_id(text, lowered)
        if mas_id:
            return self.mas_plan(mas_id)

        url_match = GIT_URL_RE.search(text)
        if url_match:
            url = url_match.group(1)
            dest_match = GIT_DEST_RE.search(text)
            cmd_match = GIT_INSTALL_CMD_RE.search(text)
            install_cmd = cmd_match.group(1).strip() if cmd_match else default_git_install_command(url)
            return self.git_plan(
                url,
                destination=dest_match.group(1) if dest_match else None,
                install_command=install_cmd
            )

        verify = is_verify_request(lowered)
        targets = [t for t in (classify_target(f, verify) for f in parse_targets(text)) if t]
        if not targets:
            return None
        return self.targets_plan(targets, system_wide=system_wide)

    @staticmethod
    def _find_mas_id(text: str, lowered: str) -> Optional[str]:
        match = MAS_LABEL_RE.search(text)
        if match:
            return match.group(1)
        if "app store" in lowered or re.search(r"\bmas\b", lowered):
            match = MAS_BARE_ID_RE.search(text)
            if match:
                return match.group(1)
        return None

    # Plans

    def path_only_plan(self) -> Plan:
        return Plan(
            "Ensure Homebrew is on system-wide PATH",
            self.homebrew_steps() + self.system_path_steps()
        )

    def mas_plan(self, app_id: str) -> Plan:
        steps = self.homebrew_steps() + self.mas_tool_steps()
        steps.append(self.mas_install_step(app_id))
        return Plan(f"Install Mac App Store app {app_id}", steps)

    def git_plan(
        self,
        url: str,
        destination: Optional[str] = None,
        install_command: Optional[str] = None
    ) -> Plan:
        dest = expand_tilde(destination or self.install_config.git_destination).rstrip("/") or "/"
        name = repository_name(url)
        checkout = f"{dest}/{name}" if dest != "/" else f"/{name}"

        steps = self.git_tool_steps()
        steps.append(Step(
            title=f"clone/update {name}",
            command=render(GIT_CLONE_OR_RESET, dest=dest, checkout=checkout, url=url),
            timeout_seconds=1200,
            safety=SafetyLevel.NEEDS_CONSENT
        ))
        if install_command and install_command.strip():
            steps.append(Step(
                title="run install command",
                command=render(GIT_RUN_INSTALL, checkout=checkout, cmd=install_command.strip()),
                timeout_seconds=1800,
                safety=SafetyLevel.NEEDS_CONSENT
            ))
        return Plan(f"Install from Git: {url}", steps)

    def targets_plan(self, targets: Sequence[InstallTarget], system_wide: bool = False) -> Plan:
        """Homebrew bootstrap, optional PATH step, then each kind group in turn."""
        steps = self.homebrew_steps()
        if system_wide:
            steps += self.system_path_steps()

        formulae = [t for t in targets if t.kind is TargetKind.FORMULA]
        casks = [t.value for t in targets if t.kind is TargetKind.CASK]
        mas_ids = [t.value for t in targets if t.kind is TargetKind.MAS_ID]

        if formulae:
            steps += self.formula_steps(formulae)
        if casks:
            steps += self.cask_steps(casks)
        if mas_ids:
            steps += self.mas_tool_steps()
            steps += [self.mas_install_step(app_id) for app_id in mas_ids]

        parts = []
        if formulae:
            parts.append("formulae: " + ", ".join(t.value for t in formulae))
        if casks:
            parts.append("casks: " + ", ".join(casks))
        if mas_ids:
            parts.append("MAS: " + ", ".join(mas_ids))
        return Plan("Install " + " • ".join(parts), steps)

    # Step groups

    def homebrew_steps(self) -> List[Step]:
        """Homebrew installer, only when no brew binary exists."""
        if self.probe.brew_installed():
            return []
        return [Step(
            title="Install Homebrew",
            command=render(HOMEBREW_BOOTSTRAP, url=self.install_config.homebrew_install_url),
            timeout_seconds=1800,
            safety=SafetyLevel.PRIVILEGED,
            requires_sudo=True,
            # The installer refuses to run as root
            sudo_mode=SudoMode.PRIME
        )]

    def system_path_steps(self) -> List[Step]:
        lines = [PATHS_FILE_HEAD]
        lines += [render(PATHS_FILE_ENTRY, dir=d) for d in self.probe.bin_directories()]
        lines.append(render(PATHS_FILE_INSTALL, target=self.install_config.paths_file))
        return [Step(
            title="Add Homebrew to system PATH",
            command="\n".join(lines),
            timeout_seconds=30,
            safety=SafetyLevel.PRIVILEGED,
            requires_sudo=True
        )]

    def formula_steps(self, formulae: Sequence[InstallTarget]) -> List[Step]:
        brew = self.probe.brew_binary()
        steps = [self._update_step(brew)]
        for target in formulae:
            steps.append(Step(
                title=f"brew install/upgrade {target.value}",
                command=render(BREW_FORMULA, brew=brew, name=target.value),
                timeout_seconds=1800
            ))
            if target.verify:
                steps.append(Step(
                    title=f"verify {target.value}",
                    command=render(VERIFY_BINARY, name=target.value),
                    timeout_seconds=30
                ))
        return steps

    def cask_steps(self, casks: Sequence[str]) -> List[Step]:
        brew = self.probe.brew_binary()
        steps = [self._update_step(brew)]
        for name in casks:
            steps.append(Step(
                title=f"brew install/upgrade --cask {name}",
                command=render(BREW_CASK, brew=brew, name=name),
                timeout_seconds=1800,
                safety=SafetyLevel.NEEDS_CONSENT
            ))
        return steps

    def mas_tool_steps(self) -> List[Step]:
        return [Step(
            title="Install mas via Homebrew (if missing)",
            command=render(ENSURE_MAS, brew=self.probe.brew_binary()),
            timeout_seconds=600
        )]

    def mas_install_step(self, app_id: str) -> Step:
        return Step(
            title=f"mas install/upgrade {app_id}",
            command=render(MAS_INSTALL, id=app_id),
            timeout_seconds=1800,
            safety=SafetyLevel.NEEDS_CONSENT
        )

    def git_tool_steps(self) -> List[Step]:
        """Command Line Tools probe, Homebrew bootstrap, then brew git fallback."""
        steps = [Step(
            title="Ensure git (Command Line Tools)",
            command=ENSURE_CLT,
            timeout_seconds=1200,
            safety=SafetyLevel.NEEDS_CONSENT,
            requires_sudo=True
        )]
        steps += self.homebrew_steps()
        steps.append(Step(
            title="Install git via Homebrew (if still missing)",
            command=render(ENSURE_GIT_BREW, brew=self.probe.brew_binary()),
            timeout_seconds=1200
        ))
        return steps

    @staticmethod
    def _update_step(brew: str) -> Step:
        return Step(
            title="brew update",
            command=render(BREW_UPDATE, brew=brew),
            timeout_seconds=1200
        )
