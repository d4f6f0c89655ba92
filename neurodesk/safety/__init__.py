"""Safety guardrails and audit logging."""

from .guardrails import SafetyGuard, SafetyCheck, RiskLevel
from .audit import AuditLogger, ActionType

__all__ = ["SafetyGuard", "SafetyCheck", "RiskLevel", "AuditLogger", "ActionType"]
