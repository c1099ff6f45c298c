"""
Test Suite for Control Tower

Unit tests live in ``tests/unit``; orchestrator tests that spawn real server
processes live in ``tests/integration``.
"""
