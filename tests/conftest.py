"""Fixtures shared by the tests which run without a cluster."""

from collections.abc import AsyncGenerator, Generator
import dataclasses

import pytest

from agent_integration.config import ClientConfig, Timeouts
from agent_integration.kube import InMemoryResourceApi, KubeClient, TestKubeClient
from agent_integration.manifest import CRD_KIND, NODE_KIND, POD_KIND, REPOSITORY_KIND

# Short bounds keep the tests of expiring waits fast
TEST_TIMEOUTS = Timeouts(create=0.5, delete=0.5, verify_status=0.5, apply_crd=0.5)

POD_SPEC = """
apiVersion: v1
kind: Pod
metadata:
  name: test-pod
spec:
  containers:
    - name: noop-service
      image: noop-service:1.0.0
      command:
        - noop-service-1.0.0/start.sh
"""


def in_memory_apis() -> dict[str, InMemoryResourceApi]:
    """Return empty in-memory APIs for every supported kind."""
    return {
        POD_KIND: InMemoryResourceApi(POD_KIND, namespace="default"),
        NODE_KIND: InMemoryResourceApi(NODE_KIND),
        CRD_KIND: InMemoryResourceApi(CRD_KIND),
        REPOSITORY_KIND: InMemoryResourceApi(REPOSITORY_KIND, namespace="default"),
    }


def client_config() -> ClientConfig:
    """Return the configuration used by the clients under test."""
    return ClientConfig(
        namespace="default",
        timeouts=dataclasses.replace(TEST_TIMEOUTS),
    )


@pytest.fixture(name="apis")
def apis_fixture() -> dict[str, InMemoryResourceApi]:
    """Fixture for the in-memory APIs backing the client."""
    return in_memory_apis()


@pytest.fixture(name="pods")
def pods_fixture(apis: dict[str, InMemoryResourceApi]) -> InMemoryResourceApi:
    """Fixture for the in-memory Pod API."""
    return apis[POD_KIND]


@pytest.fixture(name="client")
async def client_fixture(
    apis: dict[str, InMemoryResourceApi],
) -> AsyncGenerator[KubeClient, None]:
    """Fixture for a client backed by the in-memory APIs."""
    async with KubeClient(apis, client_config()) as client:
        yield client


@pytest.fixture(name="pod_spec")
def pod_spec_fixture() -> str:
    """Fixture for the YAML specification of a pod named test-pod."""
    return POD_SPEC


@pytest.fixture(name="config")
def config_fixture() -> ClientConfig:
    """Fixture for the configuration with short timeouts."""
    return client_config()


@pytest.fixture(name="sync_client")
def sync_client_fixture(
    apis: dict[str, InMemoryResourceApi], config: ClientConfig
) -> Generator[TestKubeClient, None, None]:
    """Fixture for a synchronous client backed by the in-memory APIs."""

    async def connect() -> KubeClient:
        return KubeClient(apis, config)

    with TestKubeClient(client_factory=connect) as client:
        yield client
