# Copyright (c) Syntropy Systems
"""Child process tracking and graceful shutdown."""
from __future__ import annotations

import asyncio
import contextlib
import ctypes
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from asyncio.subprocess import Process
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 10.0


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so a child dies when matrixrun dies.

    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        return


def is_running(pid: int) -> bool:
    """Return True if a process with ``pid`` exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass
class TrackedProcess:
    run_id: str
    process: Process
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def pid(self) -> int:
        return self.process.pid


class ProcessRegistry:
    """Child processes started on behalf of runs, keyed by run id.

    Each child is started in its own session, so its pid is also its process
    group id and the whole group is signalled on termination.
    """

    grace_period: float
    _processes: dict[str, TrackedProcess]

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        self.grace_period = grace_period
        self._processes = {}

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._processes

    def register(self, run_id: str, process: Process) -> None:
        self._processes[run_id] = TrackedProcess(run_id=run_id, process=process)
        logger.debug("Registered process %d for %s", process.pid, run_id)

    def unregister(self, run_id: str) -> None:
        _ = self._processes.pop(run_id, None)

    def is_running(self, run_id: str) -> bool:
        tracked = self._processes.get(run_id)
        if tracked is None:
            return False
        return tracked.process.returncode is None and is_running(tracked.pid)

    async def terminate(self, run_id: str, grace_period: float | None = None) -> int | None:
        """Terminate a run's process group.

        Sends SIGTERM, waits up to ``grace_period`` seconds (the registry's own
        grace period by default), then sends SIGKILL.
        Returns the exit code, or None if the run has no tracked process.
        """
        tracked = self._processes.pop(run_id, None)
        if tracked is None:
            return None
        if grace_period is None:
            grace_period = self.grace_period
        process = tracked.process
        if process.returncode is not None:
            return process.returncode

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(process.pid, signal.SIGTERM)
        try:
            return await asyncio.wait_for(process.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning("Process %d for %s ignored SIGTERM, sending SIGKILL", process.pid, run_id)

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
        with contextlib.suppress(asyncio.TimeoutError):
            _ = await asyncio.wait_for(process.wait(), timeout=5.0)
        return process.returncode if process.returncode is not None else -signal.SIGKILL

    async def terminate_all(self, grace_period: float | None = None) -> None:
        """Terminate every tracked process group concurrently."""
        run_ids = list(self._processes)
        if not run_ids:
            return
        logger.info("Terminating %d running process(es)", len(run_ids))
        _ = await asyncio.gather(
            *(self.terminate(run_id, grace_period) for run_id in run_ids),
            return_exceptions=True,
        )

    def summary(self) -> dict[str, object]:
        return {
            "total": len(self._processes),
            "running": sum(1 for run_id in self._processes if self.is_running(run_id)),
            "processes": [
                {
                    "runId": tracked.run_id,
                    "pid": tracked.pid,
                    "startedAt": tracked.started_at.isoformat(),
                }
                for tracked in self._processes.values()
            ],
        }


class GracefulShutdown:
    """SIGINT/SIGTERM handling for a running matrix.

    The first signal terminates tracked processes and then calls
    ``on_shutdown``. Later signals are ignored.
    """

    registry: ProcessRegistry
    grace_period: float
    _on_shutdown: Callable[[], None] | None
    _triggered: bool
    _task: asyncio.Task[None] | None
    _loop: asyncio.AbstractEventLoop | None
    _signals: tuple[signal.Signals, ...]

    def __init__(
        self,
        registry: ProcessRegistry,
        on_shutdown: Callable[[], None] | None = None,
        grace_period: float | None = None,
    ) -> None:
        self.registry = registry
        self.grace_period = grace_period if grace_period is not None else registry.grace_period
        self._on_shutdown = on_shutdown
        self._triggered = False
        self._task = None
        self._loop = None
        self._signals = (signal.SIGINT, signal.SIGTERM)

    @property
    def triggered(self) -> bool:
        return self._triggered

    def install(self) -> None:
        """Install handlers on the running event loop."""
        self._loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                self._loop.add_signal_handler(sig, self.trigger, sig)
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or a platform without loop signal support
                logger.debug("Could not install handler for %s", sig.name)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self._signals:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                _ = self._loop.remove_signal_handler(sig)
        self._loop = None

    def trigger(self, signum: int | None = None) -> None:
        """Start shutdown. Only the first call does anything."""
        if self._triggered:
            return
        self._triggered = True
        name = signal.Signals(signum).name if signum is not None else "request"
        logger.warning("Received %s, shutting down gracefully", name)
        loop = self._loop or asyncio.get_running_loop()
        self._task = loop.create_task(self._shutdown())

    async def wait(self) -> None:
        """Wait for a triggered shutdown to finish."""
        if self._task is not None:
            await self._task

    async def _shutdown(self) -> None:
        try:
            await self.registry.terminate_all(self.grace_period)
        finally:
            if self._on_shutdown is not None:
                self._on_shutdown()
