"""
Conversation and session state for NeuroDesk.

Handles:
- The append-only conversation of chat turns
- The session's cached administrator credential
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field

from .config import get_config

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant")


@dataclass
class Attachment:
    """A file sent along with a user turn."""
    filename: str
    mime_type: str
    size: int = 0


@dataclass
class ChatMessage:
    """A conversation turn."""
    role: str  # "system", "user" or "assistant"
    content: str
    attachments: List[Attachment] = field(default_factory=list)
    timestamp: str = ""

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role}")
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    def to_api(self) -> Dict[str, str]:
        """Role/content pair as sent to the chat completion API."""
        return {"role": self.role, "content": self.content}


MessageListener = Callable[[ChatMessage], None]


class Conversation:
    """
    Ordered, append-only list of turns.

    Persistence is left to listeners, which are called after every append.
    When the list grows past ``max_history`` the oldest non-system turns
    are dropped.
    """

    def __init__(self, system_prompt: Optional[str] = None, max_history: Optional[int] = None):
        config = get_config().session
        self.max_history = max_history or config.max_history
        self._messages: List[ChatMessage] = []
        self._listeners: List[MessageListener] = []
        self._lock = threading.RLock()

        prompt = config.system_prompt if system_prompt is None else system_prompt
        if prompt:
            self._messages.append(ChatMessage("system", prompt))

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def append(
        self,
        role: str,
        content: str,
        attachments: Optional[List[Attachment]] = None
    ) -> ChatMessage:
        """Append a turn and notify listeners."""
        message = ChatMessage(role, content, attachments or [])
        with self._lock:
            self._messages.append(message)
            self._trim()
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"Conversation listener failed: {e}")
        return message

    def user(self, content: str, attachments: Optional[List[Attachment]] = None) -> ChatMessage:
        return self.append("user", content, attachments)

    def assistant(self, content: str) -> ChatMessage:
        return self.append("assistant", content)

    def _trim(self) -> None:
        overflow = len(self._messages) - self.max_history
        if overflow <= 0:
            return
        keep_system = bool(self._messages) and self._messages[0].role == "system"
        start = 1 if keep_system else 0
        del self._messages[start:start + overflow]

    @property
    def messages(self) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages)

    def since(self, index: int) -> List[ChatMessage]:
        """Turns appended at or after position *index*."""
        with self._lock:
            return list(self._messages[index:])

    def to_api(self) -> List[Dict[str, str]]:
        with self._lock:
            return [m.to_api() for m in self._messages]

    def clear(self) -> None:
        """Drop everything except the system turn."""
        with self._lock:
            self._messages = [m for m in self._messages[:1] if m.role == "system"]

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)


class SudoCredential:
    """
    Session-owned administrator password.

    Kept in memory only. Never shown by ``repr`` or ``str``.
    """

    def __init__(self):
        self._secret: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_set(self) -> bool:
        with self._lock:
            return bool(self._secret)

    def get(self) -> Optional[str]:
        with self._lock:
            return self._secret

    def set(self, secret: Optional[str]) -> None:
        with self._lock:
            self._secret = secret or None

    def clear(self) -> None:
        with self._lock:
            if self._secret is not None:
                logger.info("Cleared cached administrator credential")
            self._secret = None

    def stdin_bytes(self) -> Optional[bytes]:
        """The password as the single line ``sudo -S`` reads."""
        secret = self.get()
        if not secret:
            return None
        return (secret + "\n").encode("utf-8")

    def __repr__(self) -> str:
        return f"SudoCredential(set={self.is_set})"

    __str__ = __repr__


@dataclass
class OrchestrationSession:
    """One active orchestration context: its conversation and credential cache."""
    conversation: Conversation = field(default_factory=Conversation)
    sudo: SudoCredential = field(default_factory=SudoCredential)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    metadata: Dict[str, Any] = field(default_factory=dict)
