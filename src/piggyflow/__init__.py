"""
Piggyflow - Workflow Orchestration Core
=======================================

Piggyflow coordinates the mobile-optimization agents of Clear Piggy
(analysis, component generation, performance optimization, testing)
through a sequential workflow with retries, circuit breakers and durable
state:

    Analysis  →  Component Generation  →  Performance Optimization  →  Testing

Layers (top to bottom):
    1. WorkflowOrchestrator - Composition root that drives a run
    2. Orchestration        - MessageBus, ErrorRecoverySystem, WorkflowStateManager
    3. Core                 - Config, enums, events, exceptions, models, logging

Quick Start:
    >>> from piggyflow import WorkflowOrchestrator
    >>> async with WorkflowOrchestrator() as orchestrator:
    ...     await orchestrator.create_workflow(steps)
    ...     state = await orchestrator.run()
"""

# =============================================================================
# Package Version
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# For specific components, import from submodules directly:
#   from piggyflow.core.config import PiggyflowConfig
#   from piggyflow.orchestration import MessageBus
# =============================================================================
from piggyflow.orchestration.orchestrator import WorkflowOrchestrator

__all__ = ["WorkflowOrchestrator", "__version__"]
