"""Accumulation of errors over steps which must all run.

Cleanup steps of a test must run even if an earlier step failed, while the
failure reported is the first one that happened:
```python
result = TestResult()
await result.run(client.delete(pod))
await result.run(instance.close(client))
result.check()
```
"""

from collections.abc import Awaitable, Generator, Iterable
from contextlib import contextmanager
import logging
from typing import TypeVar

from .exceptions import TestFailure

__all__ = [
    "TestResult",
    "partition_results",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class TestResult:
    """Keeps the first error of a sequence of steps."""

    __test__ = False

    def __init__(self) -> None:
        """Initialize TestResult without an error."""
        self._error: BaseException | None = None

    @property
    def error(self) -> BaseException | None:
        """Return the first error recorded, if any."""
        return self._error

    @property
    def ok(self) -> bool:
        """Return True if no error was recorded."""
        return self._error is None

    def combine(self, error: BaseException | None) -> None:
        """Record the error unless an earlier one was recorded already."""
        if error is None:
            return
        if self._error is None:
            self._error = error
        else:
            _LOGGER.warning("Ignoring subsequent error: %s", error)

    @contextmanager
    def capture(self) -> Generator[None, None, None]:
        """Record an exception raised in the block instead of propagating it."""
        try:
            yield
        except Exception as err:
            self.combine(err)

    async def run(self, awaitable: Awaitable[_T]) -> _T | None:
        """Await the step and return its value, or None if it failed."""
        try:
            return await awaitable
        except Exception as err:
            self.combine(err)
            return None

    def check(self) -> None:
        """Raise the first recorded error as a TestFailure."""
        if self._error is not None:
            raise TestFailure(str(self._error)) from self._error


def partition_results(
    results: Iterable[_T | BaseException],
) -> tuple[list[_T], list[BaseException]]:
    """Split the results of `asyncio.gather(..., return_exceptions=True)`."""
    values: list[_T] = []
    errors: list[BaseException] = []
    for result in results:
        if isinstance(result, BaseException):
            errors.append(result)
        else:
            values.append(result)
    return values, errors
