"""Shared fixtures."""

import pytest

from agentloop.clients.fake import FakeBackend
from agentloop.config import AgentConfig, MemoryConfig, SecurityConfig
from agentloop.events import RecordingEventSink
from agentloop.services.memory import ConversationMemory
from agentloop.services.orchestrator import AgentOrchestrator
from agentloop.tools import ToolCatalog, tool


@tool()
def getWeather(city: str) -> str:
    """Get the current weather for a city.

    Args:
        city: City name
    """
    return "Sunny, 35°C"


@pytest.fixture
def weather_tool():
    return getWeather


@pytest.fixture
def catalog(weather_tool):
    return ToolCatalog([weather_tool])


@pytest.fixture
def memory():
    return ConversationMemory()


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def make_orchestrator(catalog, memory, events):
    """Factory building an orchestrator around a fake backend."""

    def factory(
        backend: FakeBackend,
        security: SecurityConfig | None = None,
        tools: ToolCatalog | None = None,
        **overrides,
    ) -> AgentOrchestrator:
        config = AgentConfig(security=security or SecurityConfig(), memory=MemoryConfig(), **overrides)
        tools = tools if tools is not None else catalog
        return AgentOrchestrator(config, backend, catalog=tools, memory=memory, events=events)

    return factory
