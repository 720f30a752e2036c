"""Shared test fixtures and configuration."""

from __future__ import annotations

from typing import Any

import pytest

from modelgate.llm.catalog import default_catalog
from modelgate.llm.cost_tracker import CostTracker
from modelgate.llm.mock import MockTransport
from modelgate.llm.model_registry import ModelDefinition, ModelRegistry
from modelgate.llm.model_service import ModelService
from modelgate.llm.provider_health import ProviderHealthService
from modelgate.settings import Settings, reset_settings


# ============================================================================
# PYTEST CONFIG & MARKERS
# ============================================================================


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test (fast, no I/O)")
    config.addinivalue_line(
        "markers", "integration: mark test as integration (requires provider credentials)"
    )


# ============================================================================
# HELPERS
# ============================================================================


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides: Any) -> Settings:
    """Settings that ignore any local .env file."""
    return Settings(_env_file=None, **overrides)


def user_messages(text: str = "hello") -> list[dict[str, str]]:
    return [{"role": "user", "content": text}]


# ============================================================================
# SHARED FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep user and project YAML files out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def registry(settings) -> ModelRegistry:
    """Registry built from the bundled catalog."""
    return ModelRegistry.from_dict(default_catalog(settings))


@pytest.fixture
def health(registry, clock) -> ProviderHealthService:
    return ProviderHealthService(providers=registry.transports(), clock=clock)


@pytest.fixture
def cost_tracker(registry, clock) -> CostTracker:
    return CostTracker(providers=registry.transports(), clock=clock)


@pytest.fixture
def transports() -> dict[str, MockTransport]:
    """Mock transports by model key; tests pre-populate entries to script outcomes."""
    return {}


@pytest.fixture
def model_service(registry, health, cost_tracker, settings, transports, clock) -> ModelService:
    """Model service whose every model answers from a MockTransport."""

    def factory(model: ModelDefinition) -> MockTransport:
        if model.key not in transports:
            transports[model.key] = MockTransport(name=model.transport)
        return transports[model.key]

    return ModelService(
        registry,
        health,
        cost_tracker,
        settings,
        transport_factory=factory,
        clock=clock,
    )
