"""
Isolated runner: reflection of the user's application in a child process.
"""

from __future__ import annotations

from .runner import IsolatedRunner, RunnerState
from .startup import EntryDescriptor, StartupPlan, StartupPlanBuilder, plan_for

__all__ = [
    "IsolatedRunner",
    "RunnerState",
    "EntryDescriptor",
    "StartupPlan",
    "StartupPlanBuilder",
    "plan_for",
]
