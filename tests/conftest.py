"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ExecutorConfig, StateConfig
from declaration import parse_declaration
from engine import Engine
from providers.registry import RoutingProvider, reset_registry
from providers.simulated import SimulatedProvider
from state import LocalStateStore


@pytest.fixture(autouse=True)
def clean_registry():
    """Each test starts with an empty provider registry."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def fast_executor_config():
    """Executor settings without real backoff delays."""
    return ExecutorConfig(
        max_workers=4,
        max_attempts=3,
        operation_timeout=5.0,
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        backoff_jitter_factor=0.0,
    )


@pytest.fixture
def state_config():
    return StateConfig(backend="local", lease_ttl=30.0, lease_holder="test-holder")


@pytest.fixture
def store(tmp_path):
    return LocalStateStore(str(tmp_path / "state"), "web")


@pytest.fixture
def simulated():
    """An in-memory provider with default settings."""
    return SimulatedProvider()


@pytest.fixture
def engine(simulated, store, fast_executor_config, state_config):
    return Engine(
        provider=RoutingProvider({"simulated": simulated}),
        store=store,
        executor_config=fast_executor_config,
        state_config=state_config,
    )


@pytest.fixture
def web_declaration_data():
    """A network, a subnet inside it and an instance in the subnet."""
    return {
        "stack": "web",
        "variables": {"instance_type": "small"},
        "tags": {"owner": "platform"},
        "resources": {
            "net": {"type": "network", "properties": {"cidr": "10.0.0.0/16"}},
            "subnet": {
                "type": "subnet",
                "properties": {"network_id": "${net.id}", "cidr": "10.0.1.0/24"},
            },
            "vm": {
                "type": "compute-instance",
                "properties": {
                    "instance_type": "${var.instance_type}",
                    "image": "img-1",
                    "subnet_id": "${subnet.id}",
                },
            },
        },
        "outputs": {"vm_ip": "${vm.private_ip}", "net_id": "${net.id}"},
    }


@pytest.fixture
def web_declaration(web_declaration_data):
    return parse_declaration(web_declaration_data)

