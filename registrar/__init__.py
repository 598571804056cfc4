"""
Plan execution engine.

Executes pre-configured registration plans against third-party signup sites
at a scheduled open time, pausing on durable challenges when a human is needed.

Usage:
    from registrar import EngineConfig, build_components, Caller

    components = build_components(EngineConfig.from_env())
    result = await components.runner.execute_plan(plan_id, Caller.owner(user_id))
"""

from .app import Components, build_components
from .challenges import ChallengeService
from .config import EngineConfig, PolicyConfig, SchedulerConfig, TimingConfig
from .errors import ActionRequired, EngineError, StepFailure
from .models import Caller, Challenge, ExecutionResult, Plan, PlanExtras, SlotPreference
from .plans import cancel_plan, reschedule_plan
from .runner import PlanRunner
from .scheduler import Scheduler, SchedulerReport
from .seeding import SeedingPass

__version__ = "0.1.0"

__all__ = [
    "ActionRequired",
    "Caller",
    "Challenge",
    "ChallengeService",
    "Components",
    "EngineConfig",
    "EngineError",
    "ExecutionResult",
    "Plan",
    "PlanExtras",
    "PlanRunner",
    "PolicyConfig",
    "Scheduler",
    "SchedulerConfig",
    "SchedulerReport",
    "SeedingPass",
    "SlotPreference",
    "StepFailure",
    "TimingConfig",
    "build_components",
    "cancel_plan",
    "reschedule_plan",
]
