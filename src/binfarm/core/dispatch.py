"""Concurrent fan-out of build jobs and aggregation of their results.

One worker thread per requested platform runs the job runner; the threads
themselves mostly wait on subprocesses and lock polls, which block at the
process level in parallel. Concurrency is bounded only by the number of
requested platforms: jobs sharing a machine serialize on its lock.

The dispatcher waits for every job. A failed job never cancels a sibling;
only the supervisor (signals, internal errors) cancels the run.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

from binfarm.core.jobs import JobResult
from binfarm.core.registry import Target

LOGGER = logging.getLogger(__name__)

_DEFAULT_TICK = 1.0


class Runner(Protocol):
    """Interface for running one platform's job."""

    def run(self, target: Target, ref: str | None = None) -> JobResult:
        """Run the job and return its result; must not raise job errors."""
        ...


class Cancellation(Protocol):
    """The part of the supervisor the dispatcher needs."""

    tick_interval: float

    def cancel(self, signum: int | None = None, *, error: BaseException | None = None) -> bool:
        ...


@dataclass(frozen=True)
class RunResult:
    """
    Aggregate outcome of one invocation.

    Attributes:
        results: Platform to result, in request order.
    """

    results: Mapping[str, JobResult]

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results.values())

    @property
    def failures(self) -> list[JobResult]:
        return [r for r in self.results.values() if not r.ok]

    @property
    def succeeded(self) -> list[JobResult]:
        return [r for r in self.results.values() if r.ok]


def dispatch(
    runner: Runner,
    targets: list[Target],
    *,
    ref: str | None = None,
    supervisor: Cancellation | None = None,
    on_complete: Callable[[JobResult], None] | None = None,
) -> RunResult:
    """
    Run one job per target concurrently and wait for all of them.

    Args:
        runner: Job runner executing a single platform.
        targets: Resolved targets, already validated, in request order.
        ref: Source revision passed to every job.
        supervisor: Notified of internal errors so it can tear the run down;
            its tick bounds how long the main thread blocks between checks.
        on_complete: Called on the main thread with each result, in
            completion order.

    Returns:
        A RunResult whose results follow the order of `targets`.

    Raises:
        Exception: Whatever a runner raised unexpectedly, after the
            supervisor has cancelled the run.
    """
    if not targets:
        return RunResult(results={})

    tick = supervisor.tick_interval if supervisor is not None else _DEFAULT_TICK
    collected: dict[str, JobResult] = {}

    with ThreadPoolExecutor(
        max_workers=len(targets), thread_name_prefix="binfarm-job"
    ) as pool:
        futures: dict[Future[JobResult], Target] = {
            pool.submit(runner.run, target, ref): target for target in targets
        }
        pending = set(futures)

        while pending:
            # A bounded wait keeps the main thread returning to the
            # interpreter, where signal handlers run.
            done, pending = wait(pending, timeout=tick, return_when=FIRST_COMPLETED)
            for future in done:
                target = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    LOGGER.exception("Job %s crashed", target.id)
                    if supervisor is not None:
                        supervisor.cancel(error=exc)
                    raise
                collected[target.id] = result
                if on_complete is not None:
                    on_complete(result)

    return RunResult(results={t.id: collected[t.id] for t in targets})
