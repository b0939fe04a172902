"""
piggyflow Test Suite
====================

Test organization mirrors the source code structure:
    tests/
    ├── test_core/          → Tests for piggyflow.core (config, events, messages, models)
    ├── test_orchestration/ → Tests for piggyflow.orchestration (bus, recovery, state, orchestrator)
    └── conftest.py         → Shared pytest fixtures

Running Tests:
    pytest                          # Run all tests
    pytest tests/test_core/         # Run only core tests
"""
