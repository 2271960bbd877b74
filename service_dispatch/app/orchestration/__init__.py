"""
Run orchestration and scheduling.
"""

from .orchestrator import Orchestrator
from .scheduler import DispatchScheduler

__all__ = ["Orchestrator", "DispatchScheduler"]
