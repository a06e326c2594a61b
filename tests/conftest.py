import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
sys.path.append(str(Path(__file__).resolve().parent))

import pytest

from capcs.cloud.client import ClientFactory, CloudClient
from fakes import API, FakeClock, FakeCloudAPI, FakeTenant, FakeTokenProvider, InMemoryStore


@pytest.fixture
def cloud_api():
    return FakeCloudAPI()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cloud(cloud_api, clock):
    """Legacy-credential client acting as tenant@example.com."""
    return CloudClient(
        username="tenant@example.com",
        password="secret",
        api_endpoint=API,
        session=cloud_api,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def tokens():
    return FakeTokenProvider()


@pytest.fixture
def impersonating_cloud(cloud_api, clock, tokens):
    return CloudClient(
        user="alice@example.com",
        token_provider=tokens,
        api_endpoint=API,
        session=cloud_api,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def clients(impersonating_cloud):
    return ClientFactory(impersonating_cloud, default_user="alice@example.com")


@pytest.fixture
def machine_store():
    return InMemoryStore("cloudsigmamachines")


@pytest.fixture
def cluster_store():
    return InMemoryStore("cloudsigmaclusters")


@pytest.fixture
def tenant():
    return FakeTenant()
