"""Script packages with well known behavior to run on the agent."""

import textwrap

from .package import TestPackage

__all__ = [
    "echo_service",
    "exit_service",
    "noop_service",
    "nostop_service",
]


def _script(body: str) -> str:
    return textwrap.dedent(body).lstrip("\n")


def echo_service() -> TestPackage:
    """Print the content of LOG_OUTPUT to standard output and fall asleep.

    A new line is appended so LOG_OUTPUT should not end with one. The escape
    sequences `\\n` and `\\\\` are recognized, e.g.
    `LOG_OUTPUT='line 1\\nline 2'` prints two lines.
    """
    return TestPackage(
        name="echo-service",
        version="1.0.0",
        script=_script(
            """
            #!/bin/sh

            # Adding /run/current-system/sw/bin to PATH for NixOS support
            PATH=$PATH:/run/current-system/sw/bin

            printf '%b\\n' "$LOG_OUTPUT"

            sleep 1d
            """
        ),
    )


def exit_service() -> TestPackage:
    """Terminate immediately with the exit code in EXIT_CODE, or 0 if unset."""
    return TestPackage(
        name="exit-service",
        version="1.0.0",
        job=True,
        script=_script(
            """
            #!/bin/sh

            exit ${EXIT_CODE:-0}
            """
        ),
    )


def noop_service() -> TestPackage:
    """Perform no operation and just sleep."""
    return TestPackage(
        name="noop-service",
        version="1.0.0",
        script=_script(
            """
            #!/bin/sh

            # Adding /run/current-system/sw/bin to PATH for NixOS support
            PATH=$PATH:/run/current-system/sw/bin

            echo test-service started

            sleep 1d
            """
        ),
    )


def nostop_service() -> TestPackage:
    """Sleep while ignoring SIGINT and SIGTERM, so the service does not stop when asked."""
    return TestPackage(
        name="nostop-service",
        version="1.0.1",
        script=_script(
            """
            #!/bin/sh

            # Adding /run/current-system/sw/bin to PATH for NixOS support
            PATH=$PATH:/run/current-system/sw/bin

            echo nostop-service started

            trap '' INT TERM
            sleep 1d
            """
        ),
    )
