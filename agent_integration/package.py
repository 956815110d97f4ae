"""Script packages which the agent downloads from a repository and runs.

A package is a gzip compressed tar archive with a single executable file,
`{name}-{version}/start.sh`. Archives are built in memory and are byte-stable
for the same name, version and script.
"""

from dataclasses import dataclass
import gzip
import hashlib
import io
import logging
import tarfile
from typing import Any

import yaml

from .manifest import POD_KIND, STACKABLE_ARCH_KEY, STACKABLE_ARCH_VALUE

__all__ = [
    "TestPackage",
]

_LOGGER = logging.getLogger(__name__)

# zlib default compression level
_COMPRESS_LEVEL = 6
_SCRIPT_MODE = 0o755


@dataclass(frozen=True)
class TestPackage:
    """Package with a shell script used for testing."""

    __test__ = False

    name: str
    """The name of the package, also used as the image name."""

    version: str
    """The version of the package, also used as the image tag."""

    script: str
    """The content of the start script."""

    job: bool = False
    """Whether the script terminates on its own instead of running as a service."""

    @property
    def filename(self) -> str:
        """Return the filename of the packaged script."""
        return f"{self.name}-{self.version}.tar.gz"

    @property
    def repository_path(self) -> str:
        """Return the path of the package relative to the repository root."""
        return f"{self.name}/{self.filename}"

    @property
    def command(self) -> str:
        """Return the command which starts the script after unpacking."""
        return f"{self.name}-{self.version}/start.sh"

    def binary(self) -> bytes:
        """Return the packaged script as .tar.gz."""
        data = self.script.encode()
        info = tarfile.TarInfo(self.command)
        info.size = len(data)
        info.mode = _SCRIPT_MODE
        info.mtime = 0

        buffer = io.BytesIO()
        with gzip.GzipFile(
            fileobj=buffer, mode="wb", compresslevel=_COMPRESS_LEVEL, mtime=0
        ) as compressed:
            with tarfile.open(
                fileobj=compressed, mode="w", format=tarfile.GNU_FORMAT
            ) as tar:
                tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    def hash(self) -> str:
        """Return the SHA512 digest of the archive as lower case hex."""
        return hashlib.sha512(self.binary()).hexdigest()

    def pod_doc(
        self,
        pod_name: str,
        env: dict[str, str] | None = None,
        restart_policy: str | None = None,
    ) -> dict[str, Any]:
        """Return a pod running this package on a Stackable node.

        The restart policy defaults to Never for jobs and Always otherwise.
        """
        container: dict[str, Any] = {
            "name": self.name,
            "image": f"{self.name}:{self.version}",
            "command": [self.command],
        }
        if env:
            container["env"] = [{"name": k, "value": v} for k, v in env.items()]
        if restart_policy is None:
            restart_policy = "Never" if self.job else "Always"
        return {
            "apiVersion": "v1",
            "kind": POD_KIND,
            "metadata": {"name": pod_name},
            "spec": {
                "containers": [container],
                "nodeSelector": {STACKABLE_ARCH_KEY: STACKABLE_ARCH_VALUE},
                "tolerations": [
                    {
                        "key": STACKABLE_ARCH_KEY,
                        "operator": "Equal",
                        "value": STACKABLE_ARCH_VALUE,
                    }
                ],
                "restartPolicy": restart_policy,
            },
        }

    def pod_spec(
        self,
        pod_name: str,
        env: dict[str, str] | None = None,
        restart_policy: str | None = None,
    ) -> str:
        """Return the pod of `pod_doc` as a YAML specification."""
        return yaml.safe_dump(
            self.pod_doc(pod_name, env=env, restart_policy=restart_policy),
            sort_keys=False,
        )
