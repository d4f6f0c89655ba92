"""
Deterministic intent classification.

A small rule engine: an ordered table of rules, each an exact-phrase set
and/or an AND of keyword groups, evaluated over lower-cased trimmed text.
The first matching rule wins. Parameter extractors (depth, root path) are
separate so each can be tested on its own.
"""

import os
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple

from .config import get_config
from .shell import expand_tilde, quote


class Intent(Enum):
    """Requests handled without the model."""
    TIME = "time"
    CREATE_TREE = "create_tree"
    ROOT_TREE = "root_tree"


CREATE_WORDS = ("create", "make", "build", "generate", "map")
TREE_WORDS = ("tree", "hierarchy", "hierarchical", "structure")
DESKTOP_WORDS = ("desktop",)
ROOT_PHRASES = (
    "root of the hard drive",
    "root of the drive",
    "root of disk",
    "root of the disk",
    "root directory",
    "from the root",
    "from root",
    "entire disk",
    "entire drive",
    "all of /",
    "tree /",
)


@dataclass(frozen=True)
class IntentRule:
    """
    One classification rule.

    Matches when the text equals one of ``exact``, or when every group in
    ``all_of`` has at least one member contained in the text.
    """
    intent: Intent
    exact: FrozenSet[str] = frozenset()
    all_of: Tuple[Tuple[str, ...], ...] = ()

    def matches(self, text: str) -> bool:
        if text in self.exact:
            return True
        if not self.all_of:
            return False
        return all(any(word in text for word in group) for group in self.all_of)


DEFAULT_RULES: Tuple[IntentRule, ...] = (
    IntentRule(Intent.TIME, exact=frozenset({"what time is it?", "what time is it", "time"})),
    IntentRule(Intent.CREATE_TREE, all_of=(CREATE_WORDS, TREE_WORDS, DESKTOP_WORDS)),
    IntentRule(Intent.ROOT_TREE, all_of=(TREE_WORDS, ROOT_PHRASES)),
)


# Depth patterns, tried in order
DEPTH_PATTERNS = (
    re.compile(r"depth\s+(\d+)"),
    re.compile(r"to\s+depth\s+(\d+)"),
    re.compile(r"limit\s+(\d+)\s+level"),
    re.compile(r"-l\s+(\d+)"),
    re.compile(r"-L\s+(\d+)"),
)

_STOP_WORD_RE = re.compile(r"\s(?:to|on|at|with|depth)\b", re.IGNORECASE)


def clamp_depth(depth: int, low: Optional[int] = None, high: Optional[int] = None) -> int:
    config = get_config().intents
    low = config.min_depth if low is None else low
    high = config.max_depth if high is None else high
    return max(low, min(depth, high))


def parse_depth(text: str) -> Optional[int]:
    """
    Find a requested tree depth, clamped to the allowed range.

    Example:
        parse_depth("map my desktop to depth 99") -> 8
    """
    for pattern in DEPTH_PATTERNS:
        match = pattern.search(text)
        if match:
            return clamp_depth(int(match.group(1)))
    return None


def _looks_like_path(candidate: str) -> bool:
    return candidate.startswith(("/", "~", "."))


def extract_path(keyword: str, text: str) -> Optional[str]:
    """Words after the first *keyword* token, up to a stop word."""
    words = text.split()
    lowered = [w.lower() for w in words]
    if keyword not in lowered:
        return None
    index = lowered.index(keyword)
    tail = " ".join(words[index + 1:])
    if not tail:
        return None
    stop = _STOP_WORD_RE.search(tail)
    if stop:
        tail = tail[:stop.start()]
    return tail.strip(" ,.;:") or None


def parse_root(text: str, home: Optional[str] = None) -> Optional[str]:
    """
    Find the requested root directory.

    Looks after "from", then after "root". Candidates that do not look like
    a path are skipped.
    """
    for keyword in ("from", "root"):
        candidate = extract_path(keyword, text.strip())
        if candidate and _looks_like_path(candidate):
            return expand_tilde(candidate, home)
    return None


@dataclass
class IntentMatch:
    """A classified request and its parameters."""
    intent: Intent
    text: str
    depth: int = 3
    root: Optional[str] = None


class IntentClassifier:
    """Evaluates the rule table in order. First match wins."""

    def __init__(self, rules: Sequence[IntentRule] = DEFAULT_RULES):
        self.rules: List[IntentRule] = list(rules)

    def classify(self, text: str) -> Optional[IntentMatch]:
        normalized = text.strip().lower()
        for rule in self.rules:
            if rule.matches(normalized):
                return self._with_parameters(rule.intent, text)
        return None

    @staticmethod
    def _with_parameters(intent: Intent, text: str) -> IntentMatch:
        if intent is Intent.TIME:
            return IntentMatch(intent, text)
        depth = parse_depth(text.strip().lower())
        if depth is None:
            depth = get_config().intents.default_depth
        root = parse_root(text)
        if root is None:
            root = str(os.path.expanduser("~")) if intent is Intent.CREATE_TREE else "/"
        return IntentMatch(intent, text, depth=depth, root=root)


# Tree listing

AWK_TREE_PROGRAM = r"""
BEGIN { sub(/\/+$/, "", r); n = split(r, parts, "/"); if (r == "") n = 1 }
{
  if ($0 == r || $0 == r "/") { print $0; next }
  m = split($0, segs, "/"); d = m - n
  if (d < 0) d = 0
  if (d > max) next
  indent = ""
  for (i = 0; i < d; i++) indent = indent "  "
  print indent segs[m]
}
""".strip()


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def find_tree_binary(
    candidates: Optional[Sequence[str]] = None,
    is_executable: Callable[[str], bool] = _is_executable,
    which: Callable[[str], Optional[str]] = shutil.which
) -> Optional[str]:
    """A ``tree`` executable at a well-known location, then on PATH."""
    if candidates is None:
        candidates = get_config().intents.tree_binaries
    for candidate in candidates:
        if is_executable(candidate):
            return candidate
    return which("tree")


def tree_command(root: str, depth: int, tree_binary: Optional[str] = None) -> str:
    """Listing command for *root*, using ``tree`` or a find/awk fallback."""
    if root != "/":
        root = root.rstrip("/") or "/"
    if tree_binary:
        return f"{quote(tree_binary)} -L {depth} -a -n {quote(root)} 2>/dev/null"
    return (
        f"find {quote(root)} -maxdepth {depth} -print 2>/dev/null"
        f" | awk -v r={quote(root)} -v max={depth} {quote(AWK_TREE_PROGRAM)}"
    )
