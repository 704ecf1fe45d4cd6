"""
Tests for Fleet Convergence

Validates:
- Runs on one host are serial and FIFO
- Runs on different hosts overlap
- cancel_all reaches running, waiting and later Runs
- One report per host; an unreachable host does not affect the others
"""

import asyncio
import threading
import time
from typing import List

import pytest

from directives import TargetSpec
from executor import ExitCode, HostLaneQueue, Run, converge_hosts, worst_exit_code
from hostio import CommandResult


def _ok(cmd: str) -> CommandResult:
    return CommandResult(command=cmd, stdout="", stderr="", exit_code=0)


def test_submit_returns_report(connection_class, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue()
        conn = connection_class("vm-1")
        run = Run.from_directives([make_directive("a", command="hostname")], lambda: conn, host="vm-1")
        try:
            report = await lanes.submit(run)
        finally:
            await lanes.close()

        assert report.exit_code() == ExitCode.SUCCESS
        assert report.host == "vm-1"
        assert lanes.in_flight == []

    asyncio.run(run_test())


def test_same_host_is_serial_and_fifo(connection_class, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue(max_concurrency=3)
        conn = connection_class("vm-1")
        running = 0
        max_running = 0
        order: List[str] = []
        lock = threading.Lock()

        def work(cmd: str) -> CommandResult:
            nonlocal running, max_running
            with lock:
                running += 1
                max_running = max(max_running, running)
                order.append(cmd)
            time.sleep(0.02)
            with lock:
                running -= 1
            return _ok(cmd)

        conn.on(r"^work", respond=work)
        runs = [
            Run.from_directives([make_directive(f"s{i}", command=f"work {i}")], lambda: conn, host="vm-1")
            for i in range(1, 4)
        ]
        try:
            reports = await asyncio.gather(*(lanes.submit(run) for run in runs))
        finally:
            await lanes.close()

        assert [r.completed for r in reports] == [["s1"], ["s2"], ["s3"]]
        assert order == ["work 1", "work 2", "work 3"]
        assert max_running == 1

    asyncio.run(run_test())


def test_different_hosts_overlap(connection_class, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue(max_concurrency=2)
        runs = []

        def slow(cmd: str) -> CommandResult:
            time.sleep(0.1)
            return _ok(cmd)

        for host in ("vm-1", "vm-2"):
            conn = connection_class(host)
            conn.on(r"^slow", respond=slow)
            runs.append(Run.from_directives([make_directive("a", command="slow")], lambda c=conn: c, host=host))

        start = time.monotonic()
        try:
            await asyncio.gather(*(lanes.submit(run) for run in runs))
        finally:
            await lanes.close()
        elapsed = time.monotonic() - start

        assert elapsed < 0.19

    asyncio.run(run_test())


def test_errors_propagate_to_submitter(connection_class, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue()
        conn = connection_class("vm-1")
        run = Run.from_directives([make_directive("a", command="hostname")], lambda: conn, host="vm-1")
        fresh = Run.from_directives([make_directive("b", command="uptime")], lambda: conn, host="vm-1")

        try:
            await lanes.submit(run)
            with pytest.raises(RuntimeError, match="already executed"):
                await lanes.submit(run)
            report = await lanes.submit(fresh)
        finally:
            await lanes.close()

        assert report.completed == ["b"]

    asyncio.run(run_test())


def test_run_without_host_is_refused(fake, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue()
        run = Run.from_directives([make_directive("a", command="true")], lambda: fake)
        try:
            with pytest.raises(ValueError, match="host label"):
                await lanes.submit(run)
        finally:
            await lanes.close()

    asyncio.run(run_test())


# ==================== Cancellation ====================

def test_cancel_all_reaches_running_and_waiting_runs(connection_class, make_directive) -> None:
    """Test the converging Run stops before its next directive and the waiting one never starts."""
    async def run_test() -> None:
        lanes = HostLaneQueue()
        conn = connection_class("vm-1")
        release = threading.Event()

        def hold(cmd: str) -> CommandResult:
            release.wait(5)
            return _ok(cmd)

        conn.on(r"^step-1", respond=hold)
        directives = [make_directive("s1", command="step-1"), make_directive("s2", command="step-2")]
        first = Run.from_directives(directives, lambda: conn, host="vm-1")
        second = Run.from_directives(directives, lambda: conn, host="vm-1")

        try:
            pending = asyncio.gather(lanes.submit(first), lanes.submit(second))
            await asyncio.sleep(0.05)
            assert lanes.in_flight == [first, second]

            assert lanes.cancel_all() == 2
            release.set()
            reports = await pending
        finally:
            await lanes.close()

        assert all(r.cancelled for r in reports)
        assert all(r.exit_code() == ExitCode.CANCELLED for r in reports)
        assert reports[1].not_run == ["s1", "s2"]
        assert conn.count(r"^step-2") == 0
        assert lanes.in_flight == []

    asyncio.run(run_test())


def test_runs_submitted_after_cancel_all_start_cancelled(connection_class, make_directive) -> None:
    async def run_test() -> None:
        lanes = HostLaneQueue()
        conn = connection_class("vm-2")
        run = Run.from_directives([make_directive("a", command="hostname")], lambda: conn, host="vm-2")

        lanes.cancel_all()
        try:
            report = await lanes.submit(run)
        finally:
            await lanes.close()

        assert report.cancelled is True
        assert report.not_run == ["a"]
        assert conn.commands == []

    asyncio.run(run_test())


# ==================== converge_hosts ====================

def test_converge_hosts_reports_each_host(connection_class, make_directive, lost_connection) -> None:
    """Test one report per host; an unreachable host does not affect the others."""
    connections = {"vm-1": connection_class("vm-1"), "vm-2": connection_class("vm-2")}
    started: List[HostLaneQueue] = []

    def connection_for(host):
        def factory():
            if host == "vm-3":
                raise lost_connection
            return connections[host]
        return factory

    target = TargetSpec(name="fleet", directives=[make_directive("a", command="hostname")])

    reports = converge_hosts(
        target, ["vm-1", "vm-2", "vm-3"], connection_for,
        max_concurrency=2, on_start=started.append
    )

    assert len(started) == 1
    assert set(reports) == {"vm-1", "vm-2", "vm-3"}
    assert reports["vm-1"].exit_code() == ExitCode.SUCCESS
    assert reports["vm-2"].host == "vm-2"
    assert reports["vm-3"].exit_code() == ExitCode.CONNECTION_LOST
    assert connections["vm-1"].commands == ["hostname"]
    assert connections["vm-2"].closed is True
    assert worst_exit_code(r.exit_code() for r in reports.values()) == ExitCode.CONNECTION_LOST
