"""
ControlFix test suite.

This package contains all tests for ControlFix, organized into:
    - conftest.py: Shared fixtures and in-memory collaborator fakes
    - unit/: Unit tests with mocked dependencies

Test Organization:
    - tests/unit/test_*.py: Unit tests for individual modules
"""
