from .base import PlanStore
from .memory import InMemoryPlanStore
from .sql import SqlPlanStore

__all__ = ["PlanStore", "InMemoryPlanStore", "SqlPlanStore"]
