"""Asynchronous client which drives resources through their lifecycle.

Every operation that changes a resource only returns once the change is
observed in the watch feed of that resource, or fails when the change is not
observed within the configured timeout. Operations hold no shared mutable
state besides the connection so they may run concurrently.

Example usage:
```python
from agent_integration.kube import KubeClient
from agent_integration.manifest import Pod

async with await KubeClient.connect() as client:
    pod = await client.create(Pod, spec)
    pod = await client.verify_pod_condition(pod, "Ready")
    await client.delete(pod)
```
"""

import asyncio
from collections.abc import Callable, Mapping
import contextlib
from dataclasses import dataclass
import logging
import math
from typing import Any

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config

from agent_integration.config import ClientConfig, Timeouts
from agent_integration.exceptions import ApiError, ResourceTimeoutError
from agent_integration.manifest import (
    STATUS_KIND,
    CustomResourceDefinition,
    NamedResource,
    Pod,
    R,
    load_spec,
)

from .api import LogSource, ResourceApi, WatchEvent, WatchEventType, build_resource_apis

__all__ = [
    "KubeClient",
    "LogParams",
]

_LOGGER = logging.getLogger(__name__)

# Start a watch with the current state of the object as a synthetic ADDED event
_CURRENT_STATE = "0"


@dataclass
class LogParams:
    """Options for reading the logs of a pod."""

    tail_lines: int | None = None
    """Only return this number of lines from the end of the log."""

    container: str | None = None
    """The container to read, defaulting to the only container of the pod."""


def _split_lines(data: bytes) -> list[str]:
    """Split raw log output into lines without line terminators."""
    text = data.decode("utf-8", errors="replace")
    lines = [line.removesuffix("\r") for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _tail(lines: list[str], tail_lines: int | None) -> list[str]:
    if tail_lines is None:
        return lines
    if tail_lines <= 0:
        return []
    return lines[-tail_lines:]


class KubeClient:
    """Client for resources in the namespace of the cluster under test."""

    def __init__(
        self,
        apis: Mapping[str, ResourceApi],
        config: ClientConfig | None = None,
        api_client: k8s_client.ApiClient | None = None,
    ) -> None:
        """Initialize KubeClient with the calls for each supported kind."""
        self._apis = dict(apis)
        self._config = config or ClientConfig()
        self._api_client = api_client
        self.timeouts: Timeouts = self._config.timeouts

    @classmethod
    async def connect(cls, config: ClientConfig | None = None) -> "KubeClient":
        """Return a client connected with the local kubeconfig or in-cluster credentials."""
        config = config or ClientConfig.from_env()
        configuration = k8s_client.Configuration()
        try:
            await k8s_config.load_kube_config(
                config_file=config.config_file,
                context=config.context,
                client_configuration=configuration,
            )
            _LOGGER.debug("Loaded kubeconfig (context=%s)", config.context)
        except (k8s_config.ConfigException, FileNotFoundError) as err:
            _LOGGER.debug("No usable kubeconfig (%s), trying in-cluster config", err)
            try:
                k8s_config.load_incluster_config(client_configuration=configuration)
            except k8s_config.ConfigException as incluster_err:
                raise ApiError(
                    f"Unable to load cluster credentials: {err}; {incluster_err}"
                ) from incluster_err
        api_client = k8s_client.ApiClient(configuration)
        _LOGGER.info(
            "Connected to %s using namespace %s", configuration.host, config.namespace
        )
        return cls(
            build_resource_apis(api_client, config.namespace),
            config=config,
            api_client=api_client,
        )

    async def close(self) -> None:
        """Release the connection to the API server."""
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None

    async def __aenter__(self) -> "KubeClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def namespace(self) -> str:
        """Return the namespace of namespaced resources."""
        return self._config.namespace

    def _api(self, cls: type[R]) -> ResourceApi:
        if (api := self._apis.get(cls.kind)) is None:
            raise ValueError(f"Unsupported resource kind: {cls.kind}")
        return api

    def _resource_id(self, cls: type[R], doc: dict[str, Any]) -> NamedResource:
        name = (doc.get("metadata") or {}).get("name") or ""
        return NamedResource(cls.kind, self.namespace if cls.namespaced else None, name)

    async def _wait_for(
        self,
        api: ResourceApi,
        resource_id: NamedResource,
        operation: str,
        timeout: float,
        resource_version: str,
        accept: Callable[[WatchEvent], bool],
    ) -> WatchEvent:
        """Watch the resource until an event is accepted or the timeout expires."""
        _LOGGER.debug(
            "Waiting up to %gs for %s of %s from version %s",
            timeout,
            operation,
            resource_id,
            resource_version,
        )
        try:
            async with asyncio.timeout(timeout):
                async with contextlib.aclosing(
                    api.watch(
                        resource_id.name,
                        resource_version,
                        max(1, math.ceil(timeout)),
                    )
                ) as events:
                    async for event in events:
                        _LOGGER.debug("%s: %s event", resource_id, event.type)
                        if event.type == WatchEventType.ERROR:
                            status = event.object
                            raise ApiError(
                                f"Watching {resource_id} failed: {status.get('message')}",
                                status=status.get("code"),
                            )
                        if accept(event):
                            return event
        except TimeoutError:
            pass
        raise ResourceTimeoutError(operation, str(resource_id), timeout)

    async def list_labeled(self, cls: type[R], label_selector: str) -> list[R]:
        """Return all resources of the given kind matching the label selector."""
        docs = await self._api(cls).list(label_selector)
        return [cls.parse_doc(doc) for doc in docs]

    async def find(self, cls: type[R], name: str) -> R | None:
        """Return the resource with the given name or None if it does not exist."""
        try:
            doc = await self._api(cls).read(name)
        except ApiError as err:
            if err.not_found:
                return None
            raise
        return cls.parse_doc(doc)

    async def get_status(self, resource: R) -> R:
        """Return the current state of the given resource."""
        doc = await self._api(type(resource)).read(resource.name)
        return type(resource).parse_doc(doc)

    async def apply(self, cls: type[R], spec: str | dict[str, Any]) -> R:
        """Apply the specification with server-side apply and return the result.

        Fields owned by other managers are taken over.
        """
        body = load_spec(spec)
        resource_id = self._resource_id(cls, body)
        doc = await self._api(cls).apply(
            resource_id.name, body, self._config.field_manager
        )
        _LOGGER.info("Applied %s", resource_id)
        return cls.parse_doc(doc)

    async def create(self, cls: type[R], spec: str | dict[str, Any]) -> R:
        """Create the resource and wait until the watch feed reports it added."""
        body = load_spec(spec)
        resource_id = self._resource_id(cls, body)
        api = self._api(cls)
        await api.create(body)
        event = await self._wait_for(
            api,
            resource_id,
            "Creation",
            self.timeouts.create,
            _CURRENT_STATE,
            lambda event: event.type == WatchEventType.ADDED,
        )
        _LOGGER.info("Created %s", resource_id)
        return cls.parse_doc(event.object)

    async def delete(self, resource: R) -> None:
        """Delete the resource and wait until the watch feed reports it deleted.

        When the API server reports the resource as gone already no wait is
        performed.
        """
        api = self._api(type(resource))
        resource_id = resource.resource_id
        doc = await api.delete(resource.name)
        if doc.get("kind") == STATUS_KIND:
            _LOGGER.info("Deleted %s", resource_id)
            return
        resource_version = (doc.get("metadata") or {}).get(
            "resourceVersion"
        ) or _CURRENT_STATE
        await self._wait_for(
            api,
            resource_id,
            "Deletion",
            self.timeouts.delete,
            resource_version,
            lambda event: event.type == WatchEventType.DELETED,
        )
        _LOGGER.info("Deleted %s", resource_id)

    async def verify_status(
        self,
        resource: R,
        predicate: Callable[[R], bool],
        description: str = "Status",
    ) -> R:
        """Wait until the predicate holds for the resource and return its state.

        The predicate is first checked against the given snapshot and then
        against every ADDED or MODIFIED event of the resource.
        """
        if predicate(resource):
            return resource
        cls = type(resource)
        matched: list[R] = []

        def accept(event: WatchEvent) -> bool:
            if event.type not in (WatchEventType.ADDED, WatchEventType.MODIFIED):
                return False
            current = cls.parse_doc(event.object)
            if not predicate(current):
                return False
            matched.append(current)
            return True

        await self._wait_for(
            self._api(cls),
            resource.resource_id,
            description,
            self.timeouts.verify_status,
            _CURRENT_STATE,
            accept,
        )
        _LOGGER.debug("%s of %s satisfied", description, resource.resource_id)
        return matched[0]

    async def verify_pod_condition(self, pod: Pod, condition_type: str) -> Pod:
        """Wait until the pod condition of the given type holds."""
        return await self.verify_status(
            pod,
            lambda current: current.has_condition(condition_type),
            description=f"Pod condition [{condition_type}]",
        )

    async def apply_crd(self, crd: CustomResourceDefinition) -> CustomResourceDefinition:
        """Apply the definition and wait until the API server accepts its names."""
        applied = await self.apply(CustomResourceDefinition, crd.to_doc())
        if applied.names_accepted:
            return applied
        api = self._api(CustomResourceDefinition)
        event = await self._wait_for(
            api,
            applied.resource_id,
            "NamesAccepted",
            self.timeouts.apply_crd,
            _CURRENT_STATE,
            lambda event: event.type in (WatchEventType.ADDED, WatchEventType.MODIFIED)
            and CustomResourceDefinition.parse_doc(event.object).names_accepted,
        )
        return CustomResourceDefinition.parse_doc(event.object)

    async def get_logs(self, pod: Pod, params: LogParams | None = None) -> list[str]:
        """Return the log lines of the pod without line terminators."""
        params = params or LogParams()
        api = self._api(Pod)
        if not isinstance(api, LogSource):
            raise ValueError(f"Logs are not available for {pod.resource_id}")
        if params.tail_lines is not None and params.tail_lines <= 0:
            return []
        data = await api.read_logs(
            pod.name, tail_lines=params.tail_lines, container=params.container
        )
        return _tail(_split_lines(data), params.tail_lines)
