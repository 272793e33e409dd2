"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_provider imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fake_provider import FakeCloud, FakeProvider  # noqa: E402

from provisioner.config import EngineConfig  # noqa: E402
from provisioner.providers import ProviderRegistry  # noqa: E402
from provisioner.state import InMemoryStateStore  # noqa: E402


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> ProviderRegistry:
    """Registry routing every kind to the fake cloud."""
    providers = ProviderRegistry()
    providers.register("*", FakeProvider(cloud))
    return providers


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def fast_config() -> EngineConfig:
    """Config without retry delays."""
    return EngineConfig(
        max_workers=4,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        operation_timeout_seconds=5.0,
    )
