"""
Test harness for the Stackable agent running against a Kubernetes cluster.

The harness drives an external cluster: it creates, applies and deletes
resources and waits on the watch feed for the state transitions the agent is
expected to produce. Packages run by the agent are served from a throwaway
repository server started next to the tests.
"""

__all__ = [
    "config",
    "exceptions",
    "kube",
    "manifest",
    "package",
    "repository",
    "result",
    "services",
]
