"""chatmem Test Suite

Test organization:
- unit/: Unit tests for individual modules
  - memory/: Artifact detection, gate, extraction, providers, store, context builder
  - test_cli.py, test_logging_config.py: Command line and logging

Running tests:
    # All tests
    pytest

    # Specific module
    pytest tests/unit/memory/test_store.py
"""
