"""Run notebooks on Kaggle through the official Kaggle CLI."""

from kagglerun.orchestrator import RunOrchestrator, RunState
from kagglerun.project import ProjectStore

__all__ = ["ProjectStore", "RunOrchestrator", "RunState"]
