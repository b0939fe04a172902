"""
Mobile Workflow Example - Run the Four-Stage Optimization Plan
==============================================================

Registers in-process stand-ins for the four worker agents and runs the
analysis → generation → optimization → testing plan. The testing agent
fails once with a connection reset so the retry path is visible in the
logs.

Usage:
    python examples/mobile_workflow.py
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

from piggyflow import WorkflowOrchestrator
from piggyflow.core.config import PersistenceConfig, PiggyflowConfig, RecoveryConfig
from piggyflow.core.enums import AgentType, MessageType


def analyze(msg):
    return {"components": ["Navbar", "BudgetCard"], "breakpoints": [375, 768]}


def generate(msg):
    return {"generated": ["MobileNavbar.tsx", "MobileBudgetCard.tsx"]}


def optimize(msg):
    return {"bundle_kb_before": 412, "bundle_kb_after": 288}


def make_tester():
    attempts = {"count": 0}

    async def run_tests(msg):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise ConnectionError("ECONNRESET talking to device farm")
        await asyncio.sleep(0.05)
        return {"passed": 42, "failed": 0}

    return run_tests


async def main() -> None:
    state_dir = Path(tempfile.mkdtemp(prefix="piggyflow-"))
    config = PiggyflowConfig(
        persistence=PersistenceConfig(state_dir=state_dir, auto_save=False),
        recovery=RecoveryConfig(base_retry_delay=100, wait_scale=0.1),
    )

    async with WorkflowOrchestrator(config, configure_logs=True) as orchestrator:
        bus = orchestrator.message_bus
        bus.register_handler(AgentType.MOBILE_ANALYSIS, MessageType.TASK_REQUEST, analyze)
        bus.register_handler(AgentType.COMPONENT_GENERATOR, MessageType.TASK_REQUEST, generate)
        bus.register_handler(AgentType.PERFORMANCE_OPTIMIZER, MessageType.TASK_REQUEST, optimize)
        bus.register_handler(AgentType.TESTING, MessageType.TASK_REQUEST, make_tester())

        await orchestrator.create_workflow(
            [
                {"id": "analyze", "name": "Analyze layout", "agent_type": "analysis"},
                {
                    "id": "generate",
                    "name": "Generate components",
                    "agent_type": "component-generation",
                    "dependencies": ["analyze"],
                },
                {
                    "id": "optimize",
                    "name": "Optimize bundle",
                    "agent_type": "performance-optimization",
                    "dependencies": ["generate"],
                },
                {
                    "id": "test",
                    "name": "Run mobile tests",
                    "agent_type": "testing",
                    "dependencies": ["optimize"],
                },
            ],
            context={"project": "clear-piggy"},
        )
        state = await orchestrator.run()

    print("Mobile Optimization Workflow")
    print("-" * 40)
    print(f"Status   : {state.status.value}")
    print(f"Duration : {state.duration:.1f}ms")
    print(f"Retries  : {state.metrics.retries_performed}")
    for step in state.steps:
        print(f"  {step.id:<10} {step.status.value:<10} {step.output}")
    print(f"State    : {state_dir / (state.id + '.json')}")


if __name__ == "__main__":
    asyncio.run(main())
