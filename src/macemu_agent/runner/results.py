"""Result watcher - waits for and parses the guest test runner's log."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from macemu_agent.errors import result_timeout_error

logger = structlog.get_logger()

PASS_MARKER = "[PASS]"
FAIL_MARKER = "[FAIL]"
SUMMARY_MARKER = "Summary:"

# file:line: message, as printed by the guest-side assertion macros
_DETAIL_RE = re.compile(r"^[^\s:][^:]*:\d+:")


@dataclass(frozen=True)
class TestResult:
    """Outcome of one guest-side test case."""

    __test__ = False

    name: str
    passed: bool
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "details": self.details}


@dataclass(frozen=True)
class TestResultSet:
    """All outcomes from one result log."""

    __test__ = False

    tests: tuple[TestResult, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> int:
        return sum(1 for test in self.tests if test.passed)

    @property
    def failed(self) -> int:
        return sum(1 for test in self.tests if not test.passed)

    @property
    def total(self) -> int:
        return len(self.tests)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "total": self.total,
            "tests": [test.to_dict() for test in self.tests],
        }


def _test_name(line: str, marker: str) -> str:
    return line[len(marker) :].strip()


def parse_results(contents: str) -> TestResultSet:
    """Parse ``[PASS]``/``[FAIL]`` lines and failure details."""
    tests: list[TestResult] = []
    detail_allowed = False

    for raw in contents.splitlines():
        # Markers only count at the start of a line; indented ones are test output.
        line = raw.strip()
        if raw.startswith(PASS_MARKER):
            tests.append(TestResult(name=_test_name(raw, PASS_MARKER), passed=True))
            detail_allowed = False
        elif raw.startswith(FAIL_MARKER):
            tests.append(TestResult(name=_test_name(raw, FAIL_MARKER), passed=False))
            detail_allowed = True
        elif detail_allowed and _DETAIL_RE.match(line):
            last = tests[-1]
            tests[-1] = TestResult(name=last.name, passed=False, details=line)
            detail_allowed = False
        else:
            detail_allowed = False

    return TestResultSet(tests=tuple(tests))


class ResultWatcher:
    """Polls a shared-folder file until the guest marks it complete."""

    def __init__(
        self,
        poll_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def _read_if_complete(self, path: Path) -> str | None:
        try:
            contents = path.read_text(encoding="utf-8", errors="replace")
        except (FileNotFoundError, IsADirectoryError, PermissionError):
            return None
        return contents if SUMMARY_MARKER in contents else None

    async def wait(self, path: Path, timeout: float) -> TestResultSet:
        """Wait up to ``timeout`` seconds for a complete result log.

        Raises:
            ResultTimeoutError: the summary line never appeared.
        """
        start = self._clock()
        deadline = start + timeout

        while True:
            contents = self._read_if_complete(path)
            if contents is not None:
                results = parse_results(contents)
                logger.info(
                    "results_collected",
                    path=str(path),
                    passed=results.passed,
                    failed=results.failed,
                    elapsed_s=round(self._clock() - start, 2),
                )
                return results
            if self._clock() >= deadline:
                break
            await self._sleep(self.poll_interval)

        raise result_timeout_error(str(path), self._clock() - start)
