"""Representation of the Kubernetes resources used by the integration tests.

Only the kinds the tests interact with are modelled: Pods, Nodes,
CustomResourceDefinitions and the Stackable Repository custom resource. Each
kind is a dataclass parsed from the raw JSON document returned by the API
server, keeping the fields the tests assert on. Every kind can be constructed
without arguments, which yields an empty placeholder object.
"""

from collections.abc import Iterable
import copy
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar, TypeVar
import uuid

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from slugify import slugify
import yaml

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "ConditionStatus",
    "Condition",
    "Taint",
    "ContainerStateTerminated",
    "ContainerState",
    "ContainerStatus",
    "PodStatus",
    "KubernetesResource",
    "Pod",
    "Node",
    "total_allocatable_pods",
    "CustomResourceDefinition",
    "RepoType",
    "RepositorySpec",
    "Repository",
    "repository_crd",
    "load_spec",
    "with_unique_name",
    "unique_name",
]

_LOGGER = logging.getLogger(__name__)


POD_KIND = "Pod"
NODE_KIND = "Node"
CRD_KIND = "CustomResourceDefinition"
REPOSITORY_KIND = "Repository"
STATUS_KIND = "Status"

CORE_API_VERSION = "v1"
CRD_DOMAIN = "apiextensions.k8s.io"
CRD_API_VERSION = f"{CRD_DOMAIN}/v1"
REPOSITORY_GROUP = "stable.stackable.de"
REPOSITORY_VERSION = "v1"
REPOSITORY_PLURAL = "repositories"
REPOSITORY_API_VERSION = f"{REPOSITORY_GROUP}/{REPOSITORY_VERSION}"

NAMES_ACCEPTED = "NamesAccepted"
READY = "Ready"

# Label and taint which mark nodes managed by the Stackable agent
STACKABLE_ARCH_KEY = "kubernetes.io/arch"
STACKABLE_ARCH_VALUE = "stackable-linux"
STACKABLE_NODE_SELECTOR = f"{STACKABLE_ARCH_KEY}={STACKABLE_ARCH_VALUE}"

# Kubernetes object names are limited to DNS labels of 63 characters and a
# UUID takes 36 of them plus a separator.
_UNIQUE_PREFIX_LENGTH = 26


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version, if it has one.

    Items of a list response carry no apiVersion so its absence is accepted.
    """
    if (api_version := doc.get("apiVersion")) is None:
        return
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


class ConditionStatus(StrEnum):
    """Tristate value of a status condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(BaseManifest):
    """A status condition attached to a resource."""

    type: str
    """The type of the condition, e.g. Ready."""

    status: ConditionStatus = ConditionStatus.UNKNOWN
    """Whether the condition holds."""

    reason: str | None = None
    """Machine readable reason for the last transition."""

    message: str | None = None
    """Human readable message for the last transition."""

    @property
    def is_true(self) -> bool:
        """Return True if the condition holds."""
        return self.status == ConditionStatus.TRUE


def _find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    return next((c for c in conditions if c.type == condition_type), None)


@dataclass(frozen=True)
class Taint(DataClassDictMixin):
    """A taint on a node which repels pods not tolerating it.

    Taints are hashable so the taints of a node can be compared as a set.
    """

    class Config(BaseConfig):
        omit_none = True

    key: str
    """The taint key."""

    effect: str
    """The effect on pods not tolerating the taint, e.g. NoSchedule."""

    value: str | None = None
    """The taint value."""


@dataclass
class ContainerStateTerminated(BaseManifest):
    """Details of a terminated container."""

    exit_code: int = field(metadata=field_options(alias="exitCode"), default=0)
    """Exit code reported for the container."""

    reason: str | None = None
    """Brief reason for the termination, e.g. Completed or Error."""

    message: str | None = None
    """Message regarding the termination."""


@dataclass
class ContainerState(BaseManifest):
    """The state of a container, only one of the fields is set."""

    running: dict[str, Any] | None = None
    waiting: dict[str, Any] | None = None
    terminated: ContainerStateTerminated | None = None


@dataclass
class ContainerStatus(BaseManifest):
    """Status of a single container in a pod."""

    name: str = ""
    """The name of the container."""

    ready: bool = False
    """Whether the container passed its readiness probe."""

    restart_count: int = field(metadata=field_options(alias="restartCount"), default=0)
    """Number of times the container has been restarted."""

    state: ContainerState | None = None
    """Details about the current state of the container."""


@dataclass
class PodStatus(BaseManifest):
    """Status of a pod as reported by the agent."""

    phase: str | None = None
    """The lifecycle phase, e.g. Pending, Running, Succeeded or Failed."""

    conditions: list[Condition] = field(default_factory=list)
    """Conditions of the pod."""

    container_statuses: list[ContainerStatus] = field(
        metadata=field_options(alias="containerStatuses"), default_factory=list
    )
    """Statuses of the containers in the pod."""


@dataclass
class KubernetesResource(BaseManifest):
    """Base class for the kinds of resources handled by the client."""

    kind: ClassVar[str]
    """The kind of the object."""

    api_version: ClassVar[str]
    """The apiVersion of the object."""

    namespaced: ClassVar[bool] = True
    """Whether objects of this kind live in a namespace."""

    name: str = ""
    """The name of the object."""

    namespace: str | None = None
    """The namespace of the object if namespaced."""

    labels: dict[str, str] | None = None
    """The labels of the object."""

    resource_version: str | None = None
    """Version of the object as seen when it was read."""

    @classmethod
    def parse_doc(cls: type["R"], doc: dict[str, Any]) -> "R":
        """Parse a resource object returned from the API server."""
        raise NotImplementedError

    @classmethod
    def _parse_metadata(cls, doc: dict[str, Any]) -> dict[str, Any]:
        """Parse the metadata shared by all kinds into constructor arguments."""
        _check_version(doc, cls.api_version)
        if (kind := doc.get("kind")) is not None and kind != cls.kind:
            raise InputException(f"Invalid {cls.kind} object with kind {kind}: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.kind} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls.kind} missing metadata.name: {doc}")
        return {
            "name": name,
            "namespace": metadata.get("namespace"),
            "labels": metadata.get("labels"),
            "resource_version": metadata.get("resourceVersion"),
        }

    @property
    def resource_id(self) -> NamedResource:
        """Return the identity of this object."""
        return NamedResource(self.kind, self.namespace, self.name)

    def to_doc(self) -> dict[str, Any]:
        """Return a document suitable for sending to the API server."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespaced and self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = self.labels
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
        }

    def __str__(self) -> str:
        return str(self.resource_id)


R = TypeVar("R", bound=KubernetesResource)


@dataclass
class Pod(KubernetesResource):
    """A representation of a Pod scheduled onto an agent node."""

    kind: ClassVar[str] = POD_KIND
    api_version: ClassVar[str] = CORE_API_VERSION

    spec: dict[str, Any] = field(default_factory=dict)
    """The pod spec, kept as returned from the API server."""

    status: PodStatus = field(default_factory=PodStatus)
    """The status reported for the pod."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Pod":
        """Parse a Pod from a kubernetes resource object."""
        return cls(
            **cls._parse_metadata(doc),
            spec=doc.get("spec") or {},
            status=PodStatus.from_dict(doc.get("status") or {}),
        )

    @property
    def phase(self) -> str:
        """Return the phase of the pod or Unknown if not reported yet."""
        return self.status.phase or "Unknown"

    def condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, if reported."""
        return _find_condition(self.status.conditions, condition_type)

    def has_condition(self, condition_type: str) -> bool:
        """Return True if the condition of the given type holds."""
        condition = self.condition(condition_type)
        return condition is not None and condition.is_true

    @property
    def container_status(self) -> ContainerStatus | None:
        """Return the status of the first container, if reported."""
        if not self.status.container_statuses:
            return None
        return self.status.container_statuses[0]

    @property
    def terminated_container_state(self) -> ContainerStateTerminated | None:
        """Return the termination details of the first container, if terminated."""
        if (status := self.container_status) is None or status.state is None:
            return None
        return status.state.terminated

    @property
    def restart_count(self) -> int | None:
        """Return the restart count of the first container, if reported."""
        if (status := self.container_status) is None:
            return None
        return status.restart_count

    def to_doc(self) -> dict[str, Any]:
        doc = super().to_doc()
        doc["spec"] = self.spec
        return doc


@dataclass
class Node(KubernetesResource):
    """A representation of a cluster node."""

    kind: ClassVar[str] = NODE_KIND
    api_version: ClassVar[str] = CORE_API_VERSION
    namespaced: ClassVar[bool] = False

    taints: list[Taint] = field(default_factory=list)
    """The taints placed on the node."""

    allocatable: dict[str, str] = field(default_factory=dict)
    """The resources of the node available for scheduling."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Node":
        """Parse a Node from a kubernetes resource object."""
        spec = doc.get("spec") or {}
        status = doc.get("status") or {}
        return cls(
            **cls._parse_metadata(doc),
            taints=[Taint.from_dict(taint) for taint in spec.get("taints") or ()],
            allocatable={k: str(v) for k, v in (status.get("allocatable") or {}).items()},
        )

    @property
    def allocatable_pods(self) -> int:
        """Return the number of pods which can be scheduled on this node."""
        try:
            return int(self.allocatable.get("pods", "0"))
        except ValueError as err:
            raise InputException(
                f"Invalid allocatable pods on node {self.name}: {self.allocatable}"
            ) from err

    def to_doc(self) -> dict[str, Any]:
        doc = super().to_doc()
        doc["spec"] = {"taints": [taint.to_dict() for taint in self.taints]}
        return doc


def total_allocatable_pods(nodes: Iterable[Node]) -> int:
    """Return the number of pods which can be scheduled on all given nodes."""
    return sum(node.allocatable_pods for node in nodes)


@dataclass
class CustomResourceDefinition(KubernetesResource):
    """A representation of a CustomResourceDefinition."""

    kind: ClassVar[str] = CRD_KIND
    api_version: ClassVar[str] = CRD_API_VERSION
    namespaced: ClassVar[bool] = False

    spec: dict[str, Any] = field(default_factory=dict)
    """The definition of the custom resource."""

    conditions: list[Condition] = field(default_factory=list)
    """Conditions reported by the API server."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "CustomResourceDefinition":
        """Parse a CustomResourceDefinition from a kubernetes resource object."""
        status = doc.get("status") or {}
        return cls(
            **cls._parse_metadata(doc),
            spec=doc.get("spec") or {},
            conditions=[
                Condition.from_dict(condition)
                for condition in status.get("conditions") or ()
            ],
        )

    @property
    def names_accepted(self) -> bool:
        """Return True if the API server accepted the names of the definition."""
        condition = _find_condition(self.conditions, NAMES_ACCEPTED)
        return condition is not None and condition.is_true

    def to_doc(self) -> dict[str, Any]:
        doc = super().to_doc()
        doc["spec"] = self.spec
        return doc


class RepoType(StrEnum):
    """Type of a Stackable repository."""

    STACKABLE_REPO = "StackableRepo"


@dataclass
class RepositorySpec(BaseManifest):
    """Specification of a Stackable repository."""

    repo_type: RepoType = RepoType.STACKABLE_REPO
    """The type of the repository."""

    properties: dict[str, str] = field(default_factory=dict)
    """Properties of the repository, e.g. its url."""


@dataclass
class Repository(KubernetesResource):
    """A Stackable repository the agent downloads packages from."""

    kind: ClassVar[str] = REPOSITORY_KIND
    api_version: ClassVar[str] = REPOSITORY_API_VERSION

    spec: RepositorySpec = field(default_factory=RepositorySpec)
    """The specification of the repository."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Repository":
        """Parse a Repository from a kubernetes resource object."""
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.kind} missing spec: {doc}")
        return cls(
            **cls._parse_metadata(doc),
            spec=RepositorySpec.from_dict(spec),
        )

    @property
    def url(self) -> str | None:
        """Return the url of the repository, if set."""
        return self.spec.properties.get("url")

    def to_doc(self) -> dict[str, Any]:
        doc = super().to_doc()
        doc["spec"] = self.spec.to_dict()
        return doc


def repository_crd() -> CustomResourceDefinition:
    """Return the definition of the Repository custom resource."""
    return CustomResourceDefinition(
        name=f"{REPOSITORY_PLURAL}.{REPOSITORY_GROUP}",
        spec={
            "group": REPOSITORY_GROUP,
            "names": {
                "kind": REPOSITORY_KIND,
                "plural": REPOSITORY_PLURAL,
                "singular": REPOSITORY_KIND.lower(),
                "shortNames": [],
            },
            "scope": "Namespaced",
            "versions": [
                {
                    "name": REPOSITORY_VERSION,
                    "served": True,
                    "storage": True,
                    "schema": {
                        "openAPIV3Schema": {
                            "description": "A Stackable repository",
                            "type": "object",
                            "required": ["spec"],
                            "properties": {
                                "spec": {
                                    "description": "Specification of a Stackable repository",
                                    "type": "object",
                                    "required": ["properties", "repo_type"],
                                    "properties": {
                                        "repo_type": {
                                            "type": "string",
                                            "enum": [t.value for t in RepoType],
                                        },
                                        "properties": {
                                            "type": "object",
                                            "additionalProperties": {"type": "string"},
                                        },
                                    },
                                },
                            },
                        },
                    },
                    "subresources": {},
                }
            ],
        },
    )


def load_spec(spec: str | dict[str, Any]) -> dict[str, Any]:
    """Return the resource document for a YAML specification."""
    if isinstance(spec, dict):
        return spec
    try:
        doc = yaml.safe_load(spec)
    except yaml.YAMLError as err:
        raise InputException(f"Specification is not well-formed YAML: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Specification is not a YAML mapping: {spec}")
    return doc


def unique_name(prefix: str) -> str:
    """Return a name with a random suffix which is valid as a Kubernetes name."""
    base = slugify(prefix, max_length=_UNIQUE_PREFIX_LENGTH, lowercase=True, separator="-")
    if not base:
        return str(uuid.uuid4())
    return f"{base}-{uuid.uuid4()}"


def with_unique_name(spec: str | dict[str, Any]) -> str:
    """Append a random suffix to the name in the given YAML specification.

    Used when a test creates several objects from the same specification or
    must not collide with leftovers of an earlier run.
    """
    doc = copy.deepcopy(load_spec(spec))
    if not (metadata := doc.get("metadata")) or not metadata.get("name"):
        raise InputException(f"Specification missing metadata.name: {spec}")
    metadata["name"] = f"{metadata['name']}-{uuid.uuid4()}"
    _LOGGER.debug("Using unique name %s", metadata["name"])
    return yaml.safe_dump(doc, sort_keys=False)
