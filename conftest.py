"""Root conftest.py - register pipecheck fixtures and step definitions for pytest-bdd."""

pytest_plugins = ["pipecheck.bdd.plugin", "pipecheck.bdd.steps"]
