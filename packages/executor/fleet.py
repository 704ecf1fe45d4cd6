"""
Fleet - Concurrent Runs across hosts, strictly serial per host

Each host owns a lane of Runs. A lane executes its Runs FIFO, one at a
time (two Runs must never interleave on one host); lanes of different
hosts overlap up to max_concurrency. Runs are blocking (subprocess, ssh),
so each one executes in a worker thread.

Cancellation is fleet-wide: cancel_all() reaches the Run currently
converging on every lane as well as the Runs still waiting, and any Run
submitted afterwards starts cancelled.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from directives import TargetSpec
from planner import TagFilter

from .config import EngineConfig
from .report import RunReport
from .run import Run

logger = logging.getLogger(__name__)


class HostLaneQueue:
    def __init__(self, max_concurrency: int = 4) -> None:
        self._lanes: Dict[str, "asyncio.Queue[Tuple[Run, asyncio.Future]]"] = {}
        self._workers: Dict[str, "asyncio.Task[None]"] = {}
        self._in_flight: List[Run] = []
        self._state_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_concurrency)
        self._cancelled = False

    @property
    def in_flight(self) -> List[Run]:
        """Runs accepted and not yet finished (running or waiting), in submission order."""
        return list(self._in_flight)

    async def submit(self, run: Run) -> RunReport:
        """
        Queue a Run on its host's lane and wait for its report.

        Raises:
            ValueError: If the Run has no host label
            RuntimeError: If the Run was already executed
        """
        if not run.host:
            raise ValueError("Only Runs with a host label can be queued")
        if self._cancelled:
            run.cancel()

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        async with self._state_lock:
            queue = self._lanes.get(run.host)
            if queue is None:
                queue = asyncio.Queue()
                self._lanes[run.host] = queue
                self._workers[run.host] = asyncio.create_task(self._lane_worker(run.host))
            self._in_flight.append(run)

        await queue.put((run, future))
        return await future

    async def _lane_worker(self, host: str) -> None:
        queue = self._lanes[host]
        while True:
            run, future = await queue.get()
            try:
                async with self._slots:
                    logger.debug(f"Lane {host}: starting run of '{run.target.name}'")
                    report = await asyncio.to_thread(run.execute)
                if not future.cancelled():
                    future.set_result(report)
            except Exception as exc:
                if not future.cancelled():
                    future.set_exception(exc)
            finally:
                if run in self._in_flight:
                    self._in_flight.remove(run)
                queue.task_done()

    def cancel_all(self) -> int:
        """
        Cancel every running and waiting Run. Safe to call from a signal handler.

        Returns:
            Number of Runs asked to cancel
        """
        self._cancelled = True
        runs = list(self._in_flight)
        for run in runs:
            run.cancel()
        if runs:
            logger.warning(f"Cancelling {len(runs)} run(s) across {len(self._lanes)} host(s)")
        return len(runs)

    async def close(self) -> None:
        """Stop idle lane workers."""
        async with self._state_lock:
            workers = list(self._workers.values())
            self._workers.clear()
            self._lanes.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)


async def converge_hosts_async(
    target: TargetSpec,
    hosts: Sequence[str],
    connection_for: Callable[[str], Callable[[], object]],
    tag_filter: Optional[TagFilter] = None,
    config: Optional[EngineConfig] = None,
    max_concurrency: int = 4,
    on_start: Optional[Callable[[HostLaneQueue], None]] = None
) -> Dict[str, RunReport]:
    """
    Converge every host to the same target.

    Args:
        target: Target specification
        hosts: Host names (duplicates queue on the same lane)
        connection_for: host -> zero-argument connection factory
        tag_filter: Tag filter shared by all runs
        config: Engine configuration shared by all runs
        max_concurrency: Maximum hosts converging at once
        on_start: Called with the lane queue before any Run starts
            (e.g. to wire SIGINT to cancel_all)

    Returns:
        host -> RunReport (last report when a host is listed twice)
    """
    lanes = HostLaneQueue(max_concurrency=max_concurrency)
    if on_start is not None:
        on_start(lanes)
    reports: Dict[str, RunReport] = {}

    async def converge(host: str) -> Tuple[str, RunReport]:
        run = Run(target, connection_for(host), tag_filter=tag_filter, config=config, host=host)
        return host, await lanes.submit(run)

    logger.info(f"Converging {len(hosts)} host(s), up to {max_concurrency} at once")
    try:
        results: List[Tuple[str, RunReport]] = await asyncio.gather(*(converge(h) for h in hosts))
    finally:
        await lanes.close()

    for host, report in results:
        reports[host] = report
    return reports


def converge_hosts(*args, **kwargs) -> Dict[str, RunReport]:
    """Synchronous wrapper around converge_hosts_async()."""
    return asyncio.run(converge_hosts_async(*args, **kwargs))
