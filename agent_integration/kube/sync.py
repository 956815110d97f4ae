"""Blocking facade over the asynchronous client for use in plain test functions.

The facade owns its own event loop and runs each operation to completion on
it. Any error of an operation fails the calling test with a message naming
the operation, so tests read as a sequence of steps without error handling.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
import logging
from typing import Any, TypeVar

import pytest

from agent_integration.config import ClientConfig, Timeouts
from agent_integration.exceptions import AgentTestException
from agent_integration.manifest import CustomResourceDefinition, Pod, R

from .client import KubeClient, LogParams

__all__ = [
    "TestKubeClient",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class TestKubeClient:
    """Synchronous client which fails the current test on any error."""

    __test__ = False

    def __init__(
        self,
        config: ClientConfig | None = None,
        client_factory: Callable[[], Awaitable[KubeClient]] | None = None,
    ) -> None:
        """Initialize TestKubeClient and connect to the cluster.

        The client factory replaces the connection to a real cluster.
        """
        self._runner = asyncio.Runner()
        if client_factory is None:

            async def connect() -> KubeClient:
                return await KubeClient.connect(config)

            client_factory = connect
        try:
            self._client = self._block_on(
                _await(client_factory()), "Kubernetes client could not be created"
            )
        except BaseException:
            self._runner.close()
            raise

    def _block_on(self, coro: Coroutine[Any, Any, _T], message: str) -> _T:
        """Run the operation to completion and fail the test if it raises."""
        try:
            return self._runner.run(coro)
        except AgentTestException as err:
            _LOGGER.debug("%s: %s", message, err)
            pytest.fail(f"{message}: {err}", pytrace=False)

    @property
    def client(self) -> KubeClient:
        """Return the underlying asynchronous client."""
        return self._client

    @property
    def timeouts(self) -> Timeouts:
        """Return the timeouts of the client, which may be changed in place."""
        return self._client.timeouts

    def close(self) -> None:
        """Close the connection and the event loop."""
        try:
            self._runner.run(self._client.close())
        finally:
            self._runner.close()

    def __enter__(self) -> "TestKubeClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def list_labeled(self, cls: type[R], label_selector: str) -> list[R]:
        """Return all resources of the given kind matching the label selector."""
        return self._block_on(
            self._client.list_labeled(cls, label_selector),
            f"{cls.kind}s labeled with [{label_selector}] could not be listed",
        )

    def find(self, cls: type[R], name: str) -> R | None:
        """Return the resource with the given name or None on any error."""
        try:
            return self._runner.run(self._client.find(cls, name))
        except AgentTestException as err:
            _LOGGER.debug("%s %s could not be found: %s", cls.kind, name, err)
            return None

    def get_status(self, resource: R) -> R:
        """Return the current state of the given resource."""
        return self._block_on(
            self._client.get_status(resource),
            f"Status of {resource} could not be retrieved",
        )

    def apply(self, cls: type[R], spec: str | dict[str, Any]) -> R:
        """Apply the specification with server-side apply."""
        return self._block_on(
            self._client.apply(cls, spec), f"{cls.kind} could not be applied"
        )

    def create(self, cls: type[R], spec: str | dict[str, Any]) -> R:
        """Create the resource and wait until it is added."""
        return self._block_on(
            self._client.create(cls, spec), f"{cls.kind} could not be created"
        )

    def delete(self, resource: R) -> None:
        """Delete the resource and wait until it is gone."""
        self._block_on(
            self._client.delete(resource), f"{resource} could not be deleted"
        )

    def verify_status(
        self, resource: R, predicate: Callable[[R], bool], description: str = "Status"
    ) -> R:
        """Wait until the predicate holds for the resource."""
        return self._block_on(
            self._client.verify_status(resource, predicate, description),
            f"{description} of {resource} could not be verified",
        )

    def verify_pod_condition(self, pod: Pod, condition_type: str) -> Pod:
        """Wait until the pod condition of the given type holds."""
        return self._block_on(
            self._client.verify_pod_condition(pod, condition_type),
            f"Pod condition [{condition_type}] of {pod} could not be verified",
        )

    def apply_crd(self, crd: CustomResourceDefinition) -> CustomResourceDefinition:
        """Apply the definition and wait until its names are accepted."""
        return self._block_on(
            self._client.apply_crd(crd), f"{crd} could not be applied"
        )

    def get_logs(self, pod: Pod, params: LogParams | None = None) -> list[str]:
        """Return the log lines of the pod."""
        return self._block_on(
            self._client.get_logs(pod, params), f"Logs of {pod} could not be read"
        )

    def run(self, coro: Coroutine[Any, Any, _T], message: str) -> _T:
        """Run any coroutine on the event loop of this client."""
        return self._block_on(coro, message)


async def _await(awaitable: Awaitable[_T]) -> _T:
    return await awaitable
