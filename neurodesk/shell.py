"""
Shell text construction for NeuroDesk.

Every value that ends up inside generated shell text goes through
``quote``. Multi-line step scripts are written as ``ShellTemplate``
strings and filled with ``render``, which quotes each substituted value,
so no caller ever concatenates raw input into a command.
"""

import re
from pathlib import Path
from string import Template
from typing import Iterable, Mapping, Optional

# Flags that keep bash from reading profile and rc files.
NON_LOGIN_FLAGS = ("--noprofile", "--norc")

# Output fragments sudo prints when the piped password is rejected.
# Locale and sudo-version dependent; exit status is checked as well.
AUTH_FAILURE_PATTERNS = (
    "sorry, try again",
    "incorrect password",
    "authentication failure",
    "a password is required",
    "no password was provided",
    "incorrect password attempt",
)

# Environment entry the askpass helper reads the credential from.
ASKPASS_VARIABLE = "NEURODESK_ASKPASS_SECRET"


def quote(value: object) -> str:
    """
    Quote a value as a single shell word.

    Wraps the text in single quotes and replaces every embedded ``'`` with
    ``'\\''`` (close, escaped quote, reopen).
    """
    text = str(value)
    return "'" + text.replace("'", "'\\''") + "'"


class ShellTemplate(Template):
    """Template using ``@name`` / ``@{name}`` so ``$`` stays shell syntax."""
    delimiter = "@"


def render(template: str, **values: object) -> str:
    """
    Fill a step script, quoting every value.

    Raises:
        KeyError: if the template names a value that was not supplied
    """
    quoted = {name: quote(value) for name, value in values.items()}
    return ShellTemplate(template).substitute(quoted)


def path_prefix_export(directories: Iterable[str]) -> str:
    """
    Build ``export PATH=...:"$PATH"; `` putting *directories* first.

    Commands run in a shell that skips profile files, so package manager
    locations have to be added explicitly.
    """
    seen = []
    for directory in directories:
        if directory and directory not in seen:
            seen.append(directory)
    parts = [quote(d) for d in seen]
    parts.append('"$PATH"')
    return "export PATH=" + ":".join(parts) + "; "


def shell_invocation(command: str, shell: str = "/bin/bash") -> str:
    """Render ``<shell> --noprofile --norc -c '<command>'`` as shell text."""
    return " ".join([shell, *NON_LOGIN_FLAGS, "-c", quote(command)])


def sudo_wrap(command: str, shell: str = "/bin/bash") -> str:
    """
    Run *command* as root with the password read from stdin.

    ``-k`` ignores any cached timestamp so sudo always consumes the piped
    password instead of passing it through to the command.
    """
    return "sudo -S -k -p '' " + shell_invocation(command, shell)


def askpass_script() -> str:
    """
    ``SUDO_ASKPASS`` helper printing the credential from the environment.

    The script holds no secret. The password travels only through the
    ``ASKPASS_VARIABLE`` environment entry of the step's process.
    """
    return f"#!/bin/sh\nprintf '%s\\n' \"${ASKPASS_VARIABLE}\"\n"


def sudo_prime(command: str, askpass: str, shell: str = "/bin/bash") -> str:
    """
    Validate the piped password, then run *command* as the invoking user.

    Used for installers that refuse to run as root but call sudo themselves.
    Their sudo calls get the credential from the *askpass* helper, since a
    sudo timestamp does not carry over to a process without a terminal.
    The command reads /dev/null so an unread password line never reaches it.
    """
    return (
        "sudo -S -p '' -v && SUDO_ASKPASS=" + quote(askpass) + " "
        + shell_invocation(command, shell) + " </dev/null"
    )


def is_auth_failure(output: Optional[str]) -> bool:
    """Check captured output for a sudo authentication-failure signature."""
    if not output:
        return False
    lowered = output.lower()
    return any(pattern in lowered for pattern in AUTH_FAILURE_PATTERNS)


def expand_tilde(path: str, home: Optional[str] = None) -> str:
    """Expand a leading ``~`` against the current user's home directory."""
    if not path.startswith("~"):
        return path
    if home is None:
        home = str(Path.home())
    if path == "~":
        return home
    if path.startswith("~/"):
        return home + path[1:]
    return path


_FENCE_RE = re.compile(r"^```[^\n]*\n?(.*?)\n?```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding triple-backtick fence and its language hint."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    if "\n" not in stripped:
        return stripped.strip("`").strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    # Unterminated fence: drop the opening line only
    _, _, rest = stripped.partition("\n")
    return rest.strip()
