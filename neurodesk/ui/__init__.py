"""Terminal UI and user interaction."""

from .prompts import ConfirmationPrompt, ConfirmationResult, TerminalConsentBoundary

__all__ = ["ConfirmationPrompt", "ConfirmationResult", "TerminalConsentBoundary"]
