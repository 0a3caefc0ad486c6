"""pytest plugin: settings, provider and per-scenario context fixtures.

Register with ``pytest_plugins = ["pipecheck.bdd.plugin", "pipecheck.bdd.steps"]``.
Override ``aws_provider`` in a conftest to run scenarios against another
provider (for example ``MemoryAwsProvider``).
"""

from __future__ import annotations

from typing import Iterator

import pytest

from pipecheck.core.config import AppSettings
from pipecheck.core.logging import configure_logging
from pipecheck.core.protocols import IAwsProvider
from pipecheck.engine.context import ScenarioContext
from pipecheck.providers import create_provider


@pytest.fixture(scope="session")
def pipecheck_settings() -> AppSettings:
    settings = AppSettings()
    configure_logging(settings)
    return settings


@pytest.fixture(scope="session")
def aws_provider(pipecheck_settings: AppSettings) -> IAwsProvider:
    return create_provider(pipecheck_settings)


@pytest.fixture
def scenario_context(aws_provider: IAwsProvider, pipecheck_settings: AppSettings) -> Iterator[ScenarioContext]:
    """One context per scenario; nothing leaks into the next one."""
    context = ScenarioContext.create(aws_provider, pipecheck_settings)
    yield context
    context.close()
