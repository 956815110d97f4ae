"""Fixtures for the scenarios which run against a cluster with the agent.

The scenarios are skipped unless AGENT_INTEGRATION_TESTS=1 is set. The
cluster is selected with the usual kubeconfig or the AGENT_TEST_*
environment variables.
"""

from collections.abc import AsyncGenerator, Generator
import os

import pytest

from agent_integration.config import ClientConfig
from agent_integration.kube import KubeClient, TestKubeClient

ENABLE_ENV = "AGENT_INTEGRATION_TESTS"


@pytest.fixture(autouse=True)
def require_cluster() -> None:
    """Skip the scenario unless a cluster is requested."""
    if os.environ.get(ENABLE_ENV) != "1":
        pytest.skip(f"Set {ENABLE_ENV}=1 to run against a cluster")


@pytest.fixture(name="client_config")
def client_config_fixture() -> ClientConfig:
    """Fixture for the configuration read from the environment."""
    return ClientConfig.from_env()


@pytest.fixture(name="kube_client")
def kube_client_fixture(
    require_cluster: None, client_config: ClientConfig
) -> Generator[TestKubeClient, None, None]:
    """Fixture for a synchronous client of the cluster."""
    with TestKubeClient(client_config) as client:
        yield client


@pytest.fixture(name="async_client")
async def async_client_fixture(
    require_cluster: None, client_config: ClientConfig
) -> AsyncGenerator[KubeClient, None]:
    """Fixture for an asynchronous client of the cluster."""
    async with await KubeClient.connect(client_config) as client:
        yield client
