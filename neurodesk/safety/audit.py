"""
Audit logging for NeuroDesk.

Records every side-effecting decision as a JSON line:
commands run, plan steps, consent decisions and errors.
Credentials are never recorded.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, List
from dataclasses import dataclass, asdict
from enum import Enum
import logging


class ActionType(Enum):
    """Types of auditable actions."""
    COMMAND = "command"
    PLAN_STEP = "plan_step"
    CONSENT = "consent"
    USER_QUERY = "user_query"
    ERROR = "error"


@dataclass
class AuditEntry:
    """A single audit log entry."""
    timestamp: str
    action_type: str
    description: str
    user: str
    success: bool
    details: dict
    session_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


class AuditLogger:
    """Logs NeuroDesk actions for auditing."""

    def __init__(self, log_path: Optional[str] = None):
        """
        Initialize the audit logger.

        Args:
            log_path: Path to the audit log file
        """
        from ..config import get_config
        config = get_config()

        self.enabled = config.logging.enabled
        self.log_level = config.logging.level

        if log_path:
            self.log_path = Path(log_path)
        else:
            self.log_path = Path(config.logging.path).expanduser()

        self.logger = logging.getLogger("neurodesk.audit")

        if self.enabled:
            self._ensure_log_directory()

        self.session_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.user = os.environ.get("USER", "unknown")

        self._recent_entries: List[AuditEntry] = []
        self._max_recent = 100

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.warning(f"Audit log disabled, cannot create {self.log_path.parent}: {e}")
            self.enabled = False

    def log(
        self,
        action_type: ActionType,
        description: str,
        success: bool = True,
        details: Optional[dict] = None,
        error: Optional[str] = None
    ) -> AuditEntry:
        """
        Log an action.

        Args:
            action_type: Type of action
            description: Human-readable description
            success: Whether the action succeeded
            details: Additional details
            error: Error message if failed

        Returns:
            The created audit entry
        """
        entry = AuditEntry(
            timestamp=datetime.now().isoformat(),
            action_type=action_type.value,
            description=description,
            user=self.user,
            success=success,
            details=details or {},
            session_id=self.session_id,
            error=error
        )

        self._recent_entries.append(entry)
        if len(self._recent_entries) > self._max_recent:
            self._recent_entries.pop(0)

        if success:
            self.logger.info(f"{action_type.value}: {description}")
        else:
            self.logger.error(f"{action_type.value}: {description} - {error}")

        if self.enabled:
            self._write_entry(entry)

        return entry

    def _write_entry(self, entry: AuditEntry) -> None:
        """Write an entry to the log file."""
        try:
            with open(self.log_path, "a") as f:
                f.write(entry.to_json() + "\n")
        except OSError as e:
            self.logger.warning(f"Could not write to audit log: {e}")

    def log_command(
        self,
        command: str,
        output: str,
        exit_code: int,
        working_dir: Optional[str] = None
    ) -> AuditEntry:
        """Log a command execution."""
        return self.log(
            action_type=ActionType.COMMAND,
            description=f"Executed: {command[:100]}",
            success=exit_code == 0,
            details={
                "command": command,
                "exit_code": exit_code,
                "output_preview": output[:500] if output else "",
                "working_dir": working_dir
            },
            error=None if exit_code == 0 else f"exit {exit_code}"
        )

    def log_step(
        self,
        title: str,
        command: str,
        exit_code: int,
        requires_sudo: bool
    ) -> AuditEntry:
        """Log one plan step. The command is logged unwrapped, without stdin."""
        return self.log(
            action_type=ActionType.PLAN_STEP,
            description=f"Step: {title}",
            success=exit_code == 0,
            details={
                "command": command,
                "exit_code": exit_code,
                "requires_sudo": requires_sudo
            },
            error=None if exit_code == 0 else f"exit {exit_code}"
        )

    def log_consent(self, kind: str, prompt: str, approved: bool) -> AuditEntry:
        """Log a consent decision."""
        return self.log(
            action_type=ActionType.CONSENT,
            description=f"{kind} {'approved' if approved else 'declined'}",
            success=True,
            details={"kind": kind, "prompt": prompt[:500], "approved": approved}
        )

    def log_user_query(self, query: str) -> AuditEntry:
        """Log a user query."""
        return self.log(
            action_type=ActionType.USER_QUERY,
            description=f"User asked: {query[:100]}",
            success=True,
            details={"query": query}
        )

    def log_error(
        self,
        description: str,
        error: str,
        details: Optional[dict] = None
    ) -> AuditEntry:
        """Log an error."""
        return self.log(
            action_type=ActionType.ERROR,
            description=description,
            success=False,
            details=details or {},
            error=error
        )

    def get_recent_entries(
        self,
        count: int = 10,
        action_type: Optional[ActionType] = None
    ) -> List[AuditEntry]:
        """Get recent audit entries."""
        entries = self._recent_entries

        if action_type:
            entries = [e for e in entries if e.action_type == action_type.value]

        return entries[-count:]
