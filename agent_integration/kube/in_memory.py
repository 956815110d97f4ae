"""In-memory implementation of the ResourceApi interface.

Objects are kept per kind in a dict and every change is appended to an event
history with a monotonically increasing resource version, so watches can be
resumed from any version like on a real API server. Tests change the status
of objects the way the agent would with `set_status`.
"""

import asyncio
from collections.abc import AsyncIterator
import copy
import logging
from typing import Any

from agent_integration.exceptions import ApiError
from agent_integration.manifest import STATUS_KIND

from .api import LogSource, ResourceApi, WatchEvent, WatchEventType

__all__ = [
    "InMemoryResourceApi",
]

_LOGGER = logging.getLogger(__name__)

_STATUS_SUCCESS = {"kind": STATUS_KIND, "apiVersion": "v1", "status": "Success"}


def _matches(labels: dict[str, str], label_selector: str | None) -> bool:
    """Return True if the labels match a selector of key=value and key!=value terms."""
    if not label_selector:
        return True
    for term in label_selector.split(","):
        term = term.strip()
        if "!=" in term:
            key, value = term.split("!=", 1)
            if labels.get(key.strip()) == value.strip():
                return False
        elif "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key.strip()) != value.strip():
                return False
        elif term not in labels:
            return False
    return True


def _name(doc: dict[str, Any]) -> str:
    if not (name := (doc.get("metadata") or {}).get("name")):
        raise ApiError("metadata.name is required", status=422)
    return name


class InMemoryResourceApi(ResourceApi, LogSource):
    """Objects of one kind kept in memory."""

    def __init__(
        self, kind: str, namespace: str | None = None, graceful_delete: bool = False
    ) -> None:
        """Initialize InMemoryResourceApi.

        With graceful deletion a deleted object is only marked for deletion
        until `finish_deletion` is called.
        """
        self.kind = kind
        self.namespace = namespace
        self.graceful_delete = graceful_delete
        self.objects: dict[str, dict[str, Any]] = {}
        self.history: list[tuple[int, WatchEvent]] = []
        self.logs: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, ApiError] = {}
        # Changes are applied but never reach a watch, like a lagging feed
        self.suppress_events = False
        self._resource_version = 0
        self._changed = asyncio.Condition()

    def _check(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if (error := self.errors.get(operation)) is not None:
            raise error

    def _get(self, name: str) -> dict[str, Any]:
        if (obj := self.objects.get(name)) is None:
            raise ApiError(f'{self.kind} "{name}" not found', status=404)
        return obj

    def _stored(self, body: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of the body as the API server would store it."""
        obj = copy.deepcopy(body)
        if self.namespace is not None:
            obj.setdefault("metadata", {})["namespace"] = self.namespace
        return obj

    async def _record(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        """Bump the resource version of the object and publish the change."""
        self._resource_version += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._resource_version)
        if self.suppress_events:
            return
        event = WatchEvent(type=event_type, object=copy.deepcopy(obj))
        async with self._changed:
            self.history.append((self._resource_version, event))
            self._changed.notify_all()

    async def list(self, label_selector: str | None = None) -> list[dict[str, Any]]:
        self._check("list", label_selector or "")
        return [
            copy.deepcopy(obj)
            for obj in self.objects.values()
            if _matches((obj.get("metadata") or {}).get("labels") or {}, label_selector)
        ]

    async def read(self, name: str) -> dict[str, Any]:
        self._check("read", name)
        return copy.deepcopy(self._get(name))

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        name = _name(body)
        self._check("create", name)
        if name in self.objects:
            raise ApiError(f'{self.kind} "{name}" already exists', status=409)
        obj = self._stored(body)
        self.objects[name] = obj
        await self._record(WatchEventType.ADDED, obj)
        return copy.deepcopy(obj)

    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        self._check("apply", name)
        obj = self._stored(body)
        obj.setdefault("metadata", {})["managedFields"] = [{"manager": field_manager}]
        if (existing := self.objects.get(name)) is not None:
            if "status" in existing:
                obj["status"] = existing["status"]
            self.objects[name] = obj
            await self._record(WatchEventType.MODIFIED, obj)
        else:
            self.objects[name] = obj
            await self._record(WatchEventType.ADDED, obj)
        return copy.deepcopy(obj)

    async def delete(self, name: str) -> dict[str, Any]:
        self._check("delete", name)
        obj = self._get(name)
        if self.graceful_delete:
            obj["metadata"]["deletionTimestamp"] = "1970-01-01T00:00:00Z"
            await self._record(WatchEventType.MODIFIED, obj)
            return copy.deepcopy(obj)
        await self.finish_deletion(name)
        return dict(_STATUS_SUCCESS)

    async def finish_deletion(self, name: str) -> None:
        """Remove the object and publish its deletion."""
        obj = self.objects.pop(name)
        await self._record(WatchEventType.DELETED, obj)

    async def set_status(self, name: str, status: dict[str, Any]) -> None:
        """Replace the status of the object and publish the modification."""
        obj = self._get(name)
        obj["status"] = copy.deepcopy(status)
        await self._record(WatchEventType.MODIFIED, obj)

    async def publish_error(self, message: str, code: int = 500) -> None:
        """Publish an ERROR event to every watch."""
        self._resource_version += 1
        status = {**_STATUS_SUCCESS, "status": "Failure", "message": message, "code": code}
        async with self._changed:
            self.history.append(
                (self._resource_version, WatchEvent(WatchEventType.ERROR, status))
            )
            self._changed.notify_all()

    async def watch(
        self, name: str, resource_version: str, timeout_seconds: int
    ) -> AsyncIterator[WatchEvent]:
        self._check("watch", name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        cursor = self._resource_version
        if resource_version == "0":
            if not self.suppress_events and (obj := self.objects.get(name)) is not None:
                yield WatchEvent(WatchEventType.ADDED, copy.deepcopy(obj))
        else:
            cursor = int(resource_version)
        while True:
            for version, event in list(self.history):
                if version <= cursor:
                    continue
                cursor = version
                if event.type == WatchEventType.ERROR or event.name == name:
                    yield event
            if (remaining := deadline - loop.time()) <= 0:
                return
            async with self._changed:
                try:
                    await asyncio.wait_for(
                        self._changed.wait_for(
                            lambda: bool(self.history) and self.history[-1][0] > cursor
                        ),
                        remaining,
                    )
                except TimeoutError:
                    _LOGGER.debug("Watch of %s %s expired", self.kind, name)
                    return

    async def read_logs(
        self, name: str, tail_lines: int | None = None, container: str | None = None
    ) -> bytes:
        self._check("logs", name)
        self._get(name)
        return self.logs.get(name, b"")
