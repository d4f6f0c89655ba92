"""
Error handling for NeuroDesk.

Provides:
- Custom exception types, including the chat-completion failure kinds
- Error boundary wrapper that turns unexpected failures into messages
- User-friendly and log-friendly error formatting
"""

import traceback
from typing import Callable, Optional
from dataclasses import dataclass, field
from enum import Enum


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"           # Minor issues, can continue
    MEDIUM = "medium"     # Significant issues, current operation fails
    HIGH = "high"         # Serious issues, should stop current operation
    CRITICAL = "critical" # Fatal issues, host environment is unusable


class ErrorCategory(Enum):
    """Categories of errors for better handling."""
    CONFIGURATION = "configuration"
    NETWORK = "network"
    API = "api"
    COMMAND_EXECUTION = "command_execution"
    SYNTHESIS = "synthesis"
    PERMISSION = "permission"
    USER_INPUT = "user_input"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information about an error."""
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    user_message: str
    technical_message: str
    recoverable: bool = True
    suggested_action: Optional[str] = None
    original_exception: Optional[Exception] = None
    traceback_str: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class NeuroDeskError(Exception):
    """Base exception for NeuroDesk errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        user_message: Optional[str] = None,
        recoverable: bool = True,
        suggested_action: Optional[str] = None
    ):
        super().__init__(message)
        self.category = category
        self.severity = severity
        self.user_message = user_message or message
        self.recoverable = recoverable
        self.suggested_action = suggested_action


class ConfigurationError(NeuroDeskError):
    """Configuration-related errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=kwargs.get("severity", ErrorSeverity.HIGH),
            **{k: v for k, v in kwargs.items() if k != "severity"}
        )


class ChatCompletionError(NeuroDeskError):
    """Base class for failures of the hosted chat completion API."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.API)
        super().__init__(message, **kwargs)


class MissingCredentialError(ChatCompletionError):
    """No API key is configured."""

    def __init__(self, provider: str = "the provider"):
        super().__init__(
            f"API key for {provider} missing.",
            category=ErrorCategory.CONFIGURATION,
            suggested_action="Set NEURODESK_API_KEY or add api_key to your config file."
        )
        self.provider = provider


class InvalidResponseError(ChatCompletionError):
    """The API answered with something that is not a token stream."""

    def __init__(self, detail: str = "Invalid streaming response."):
        super().__init__(detail)


class HttpError(ChatCompletionError):
    """The API answered with a non-2xx status."""

    def __init__(self, status: int, body: str):
        super().__init__(
            f"HTTP {status}: {body}",
            user_message=f"The API request failed (HTTP {status}).",
            suggested_action=_suggestion_for_status(status)
        )
        self.status = status
        self.body = body


class NetworkError(ChatCompletionError):
    """The request never completed."""

    def __init__(self, underlying: Optional[Exception] = None):
        detail = str(underlying) if underlying else "connection failed"
        super().__init__(
            f"Network error: {detail}",
            category=ErrorCategory.NETWORK,
            suggested_action="Check your internet connection and try again."
        )
        self.underlying = underlying


class SynthesisError(NeuroDeskError):
    """The model could not produce a usable command."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.SYNTHESIS,
            severity=kwargs.get("severity", ErrorSeverity.LOW),
            **{k: v for k, v in kwargs.items() if k != "severity"}
        )


def _suggestion_for_status(status: int) -> Optional[str]:
    if status in (401, 403):
        return "Check that your API key is valid."
    if status == 429:
        return "You are being rate limited. Wait a moment and try again."
    if status >= 500:
        return "The service is having trouble. Try again later."
    return None


class ErrorBoundary:
    """
    Error boundary for wrapping operations with graceful error handling.

    Usage:
        with ErrorBoundary("handle_request") as boundary:
            risky_function()

        if boundary.has_error:
            print(boundary.error_context.user_message)
    """

    def __init__(
        self,
        operation: str,
        on_error: Optional[Callable[[ErrorContext], None]] = None,
        show_technical_details: bool = False,
        default_category: ErrorCategory = ErrorCategory.UNKNOWN,
        default_severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ):
        """
        Initialize the error boundary.

        Args:
            operation: Name of the operation being wrapped
            on_error: Optional callback when error occurs
            show_technical_details: Whether to include traceback
            default_category: Default error category if not determined
            default_severity: Default error severity if not determined
        """
        self.operation = operation
        self.on_error = on_error
        self.show_technical_details = show_technical_details
        self.default_category = default_category
        self.default_severity = default_severity
        self.error_context: Optional[ErrorContext] = None

    @property
    def has_error(self) -> bool:
        """Check if an error occurred."""
        return self.error_context is not None

    def __enter__(self) -> "ErrorBoundary":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """
        Exit the error boundary, catching and processing any exception.

        KeyboardInterrupt and SystemExit are never swallowed.
        """
        if exc_type is None:
            return False
        if issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            return False

        self.error_context = self._exception_to_context(exc_val, exc_tb)

        if self.on_error:
            self.on_error(self.error_context)

        return True

    def _exception_to_context(self, exc: Exception, exc_tb) -> ErrorContext:
        """Convert an exception to an ErrorContext."""
        category = self.default_category
        severity = self.default_severity
        user_message = str(exc)
        suggested_action = None
        recoverable = True

        if isinstance(exc, NeuroDeskError):
            category = exc.category
            severity = exc.severity
            user_message = exc.user_message
            suggested_action = exc.suggested_action
            recoverable = exc.recoverable

        elif isinstance(exc, ConnectionError):
            category = ErrorCategory.NETWORK
            user_message = "Network connection error. Please check your internet connection."
            suggested_action = "Check your internet connection and try again."

        elif isinstance(exc, FileNotFoundError):
            category = ErrorCategory.COMMAND_EXECUTION
            severity = ErrorSeverity.CRITICAL
            user_message = f"Required program not found: {getattr(exc, 'filename', None) or 'unknown'}"
            recoverable = False

        elif isinstance(exc, PermissionError):
            category = ErrorCategory.PERMISSION
            user_message = "Permission denied. You may not have access to this resource."

        elif isinstance(exc, TimeoutError):
            category = ErrorCategory.COMMAND_EXECUTION
            user_message = "Operation timed out."
            suggested_action = "Try again or increase the timeout."

        elif isinstance(exc, ValueError):
            category = ErrorCategory.USER_INPUT
            severity = ErrorSeverity.LOW
            user_message = f"Invalid value: {exc}"

        traceback_str = None
        if self.show_technical_details:
            traceback_str = "".join(traceback.format_exception(type(exc), exc, exc_tb))

        return ErrorContext(
            category=category,
            severity=severity,
            operation=self.operation,
            user_message=user_message,
            technical_message=f"{type(exc).__name__}: {exc}",
            recoverable=recoverable,
            suggested_action=suggested_action,
            original_exception=exc,
            traceback_str=traceback_str
        )


def format_error_for_user(context: ErrorContext) -> str:
    """
    Format an error context for display to the user.

    Args:
        context: The error context

    Returns:
        Formatted error message
    """
    lines = [context.user_message]

    if context.suggested_action:
        lines.append(f"Suggestion: {context.suggested_action}")

    return "\n".join(lines)


def format_error_for_log(context: ErrorContext) -> str:
    """
    Format an error context for logging.

    Args:
        context: The error context

    Returns:
        Formatted log message
    """
    lines = [
        f"[{context.severity.value.upper()}] {context.category.value}: {context.operation}",
        f"  Message: {context.technical_message}",
    ]

    if context.traceback_str:
        lines.append(f"  Traceback:\n{context.traceback_str}")

    return "\n".join(lines)
