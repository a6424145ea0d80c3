"""Iterative web research: state machine, multi-provider fan-out and the service facade."""

from delve.research.orchestrator import MultiProviderOrchestrator
from delve.research.service import ResearchService
from delve.research.store import ResearchStore
from delve.research.workflow import RunStateMachine

__all__ = ["MultiProviderOrchestrator", "ResearchService", "ResearchStore", "RunStateMachine"]
