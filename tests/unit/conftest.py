"""Shared fixtures for the fleet orchestrator unit tests."""

import pytest

from fakes import FakeEnvironmentManager, make_config
from fleet_orchestrator.channel import DuplexChannel
from fleet_orchestrator.credentials import CredentialStore
from fleet_orchestrator.events import MemoryEventSink
from fleet_orchestrator.health_monitor import HealthMonitor
from fleet_orchestrator.lifecycle import LifecycleManager
from fleet_orchestrator.models import Credential
from fleet_orchestrator.scheduler import Scheduler
from fleet_orchestrator.state import FleetState


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def state(config):
    return FleetState(config)


@pytest.fixture
def events():
    return MemoryEventSink()


@pytest.fixture
def environment():
    return FakeEnvironmentManager()


@pytest.fixture
def credentials():
    return CredentialStore(
        credentials=[
            Credential(identity="alpha", secret="alpha-secret"),
            Credential(identity="bravo", secret="bravo-secret"),
            Credential(identity="charlie", secret="charlie-secret"),
        ]
    )


@pytest.fixture
def lifecycle(state, events, environment, credentials):
    return LifecycleManager(state, events, environment, credentials)


@pytest.fixture
def scheduler(state, events, lifecycle):
    return Scheduler(state, events, lifecycle)


@pytest.fixture
def monitor(state, events, lifecycle, environment):
    return HealthMonitor(state, events, lifecycle, environment)


@pytest.fixture
def channel(state, events):
    return DuplexChannel(state, events)
