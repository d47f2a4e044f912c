"""
Integration tests for the phase executor.

These tests run real phases against:
- The mock Claude CLI for deterministic agent sessions
- Temporary git repositories with a local bare remote
- A scripted PR service in place of the gh CLI

Running integration tests:
    pytest -m integration
    pytest tests/integration/ -v

Mock Claude control:
    - Environment: MOCK_SCENARIO=fail pytest ...
    - MOCK_CALL_LOG=<file> records one line per agent session
"""
