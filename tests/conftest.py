"""
Shared Test Fixtures for piggyflow
===================================

Reusable pytest fixtures used across the test suite, organized by layer:

    1. Configuration fixtures (fast recovery, tmp_path persistence)
    2. Component fixtures (MessageBus, ErrorRecoverySystem, WorkflowStateManager)
    3. Workflow fixtures (steps and states)
    4. Orchestrator fixtures

Timing knobs are shrunk so recovery waits and retry backoff take
milliseconds instead of seconds.
"""

from __future__ import annotations

import pytest

from piggyflow.core.config import (
    MessageBusConfig,
    PersistenceConfig,
    PiggyflowConfig,
    RecoveryConfig,
)
from piggyflow.core.enums import AgentType
from piggyflow.core.models import WorkflowState, WorkflowStep
from piggyflow.orchestration.error_recovery import ErrorRecoverySystem
from piggyflow.orchestration.message_bus import MessageBus
from piggyflow.orchestration.orchestrator import WorkflowOrchestrator
from piggyflow.orchestration.state_manager import WorkflowStateManager


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def persistence_config(tmp_path):
    """Persistence under tmp_path, auto-save off so tests control writes."""
    return PersistenceConfig(
        auto_save=False,
        state_dir=tmp_path / "state",
        backup_dir=tmp_path / "backups",
    )


@pytest.fixture
def recovery_config():
    """Recovery settings with near-zero waits and backoff."""
    return RecoveryConfig(
        base_retry_delay=1,
        max_retry_delay=10,
        circuit_breaker_threshold=3,
        circuit_breaker_timeout=50,
        wait_scale=0.0,
    )


@pytest.fixture
def config(persistence_config, recovery_config):
    """PiggyflowConfig wired for fast, isolated tests."""
    return PiggyflowConfig(
        persistence=persistence_config,
        recovery=recovery_config,
        message_bus=MessageBusConfig(request_timeout_ms=500),
    )


# =============================================================================
# Components
# =============================================================================

@pytest.fixture
async def message_bus():
    """Fresh MessageBus; stopped after the test."""
    bus = MessageBus()
    yield bus
    await bus.stop()


@pytest.fixture
def recovery(recovery_config):
    """Fresh ErrorRecoverySystem with the built-in patterns."""
    return ErrorRecoverySystem(recovery_config)


@pytest.fixture
def sample_steps():
    """The four-stage mobile optimization plan."""
    return [
        WorkflowStep(
            id="analyze",
            name="Analyze mobile layout",
            agent_type=AgentType.MOBILE_ANALYSIS,
            input={"path": "src/components"},
        ),
        WorkflowStep(
            id="generate",
            name="Generate mobile components",
            agent_type=AgentType.COMPONENT_GENERATOR,
            dependencies=["analyze"],
        ),
        WorkflowStep(
            id="optimize",
            name="Optimize performance",
            agent_type=AgentType.PERFORMANCE_OPTIMIZER,
            dependencies=["generate"],
        ),
        WorkflowStep(
            id="test",
            name="Run mobile tests",
            agent_type=AgentType.TESTING,
            dependencies=["optimize"],
        ),
    ]


@pytest.fixture
def workflow_state(sample_steps):
    return WorkflowState(id="wf-test", steps=sample_steps, context={"project": "piggy"})


@pytest.fixture
async def state_manager(workflow_state, persistence_config):
    """WorkflowStateManager over the sample plan; destroyed after the test."""
    manager = WorkflowStateManager(workflow_state, persistence_config)
    yield manager
    await manager.destroy()


# =============================================================================
# Orchestrator
# =============================================================================

@pytest.fixture
async def orchestrator(config):
    """Initialized WorkflowOrchestrator; shut down after the test."""
    orchestrator = WorkflowOrchestrator(config)
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.shutdown()
