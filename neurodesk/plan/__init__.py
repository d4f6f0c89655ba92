"""Install plans: model and builder. Execution lives in ``plan.executor``."""

from .models import InstallTarget, Plan, SafetyLevel, Step, SudoMode, TargetKind
from .builder import HomebrewProbe, InstallPlanBuilder

__all__ = [
    "InstallTarget",
    "Plan",
    "SafetyLevel",
    "Step",
    "SudoMode",
    "TargetKind",
    "HomebrewProbe",
    "InstallPlanBuilder",
]
