"""Library for managing resource lifecycles in the cluster under test.

The `KubeClient` performs every operation asynchronously and confirms each
state transition with the watch feed of the resource. The `TestKubeClient`
wraps it for plain synchronous test functions.
"""

from .api import LogSource, ResourceApi, WatchEvent, WatchEventType
from .client import KubeClient, LogParams
from .in_memory import InMemoryResourceApi
from .sync import TestKubeClient
from .temporary import AsyncTemporaryResource, TemporaryResource

__all__ = [
    "InMemoryResourceApi",
    "KubeClient",
    "LogParams",
    "LogSource",
    "ResourceApi",
    "TemporaryResource",
    "AsyncTemporaryResource",
    "TestKubeClient",
    "WatchEvent",
    "WatchEventType",
]
