# Copyright (c) Syntropy Systems
"""Host resource sampling, threshold alerts and parallelism advice."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import psutil

from matrixrun.errors import ThresholdConfigError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 5.0
DEFAULT_MAX_HISTORY_SIZE = 200
ALERT_THROTTLE_SECONDS = 30.0
HIGH_USAGE_PERCENT = 70.0
HIGH_CPU_PERCENT = 80.0
MIN_CORES_FOR_CPU_ADVICE = 2

_FALLBACK_MEMORY = 8 * 1024**3
_FALLBACK_DISK = 100 * 1024**3
_BYTE_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3, "TB": 1024**4}

# Last value read from psutil.cpu_percent, for callers that must not sample
_last_cpu_percent = 0.0


@dataclass
class SystemResources:
    """One snapshot of host usage. Percentages are 0-100."""

    memory_usage: float
    total_memory: int
    free_memory: int
    disk_usage: float
    total_disk: int
    free_disk: int
    cpu_usage: float
    cpu_cores: int
    load_average: tuple[float, float, float]


def _fallback_resources() -> SystemResources:
    return SystemResources(
        memory_usage=0.0,
        total_memory=_FALLBACK_MEMORY,
        free_memory=_FALLBACK_MEMORY // 2,
        disk_usage=50.0,
        total_disk=_FALLBACK_DISK,
        free_disk=_FALLBACK_DISK // 2,
        cpu_usage=0.0,
        cpu_cores=4,
        load_average=(0.0, 0.0, 0.0),
    )


def get_system_resources(path: Path | None = None, *, sample_cpu: bool = True) -> SystemResources:
    """Snapshot memory, disk (for the volume holding ``path``) and CPU usage.

    Each psutil.cpu_percent call measures the time since the previous one, so
    only the resource monitor samples CPU. With ``sample_cpu=False`` the most
    recent sampled value is reported instead.

    Returns fallback values if the host can't be queried.
    """
    global _last_cpu_percent  # noqa: PLW0603
    disk_path = path if path is not None else Path.cwd()
    while not disk_path.exists() and disk_path != disk_path.parent:
        disk_path = disk_path.parent
    try:
        mem = psutil.virtual_memory()
        disk = shutil.disk_usage(disk_path)
        if sample_cpu:
            _last_cpu_percent = float(psutil.cpu_percent(interval=None))
        cpu_percent = _last_cpu_percent
        cores = psutil.cpu_count() or 1
        load = os.getloadavg() if hasattr(os, "getloadavg") else (0.0, 0.0, 0.0)
    except (AttributeError, OSError, ValueError, RuntimeError) as e:
        logger.warning("Failed to read system resources: %s", e)
        return _fallback_resources()

    disk_usage = (disk.used / disk.total) * 100 if disk.total else 0.0
    return SystemResources(
        memory_usage=float(mem.percent),
        total_memory=int(mem.total),
        free_memory=int(mem.available),
        disk_usage=disk_usage,
        total_disk=disk.total,
        free_disk=disk.free,
        cpu_usage=float(cpu_percent),
        cpu_cores=cores,
        load_average=(load[0], load[1], load[2]),
    )


@dataclass(frozen=True)
class ResourceThresholds:
    """Warning and critical levels per resource, in percent."""

    memory_warning: float = 75.0
    memory_critical: float = 90.0
    disk_warning: float = 80.0
    disk_critical: float = 95.0
    cpu_warning: float = 80.0
    cpu_critical: float = 95.0

    def __post_init__(self) -> None:
        for resource in ("memory", "disk", "cpu"):
            warning = getattr(self, f"{resource}_warning")
            critical = getattr(self, f"{resource}_critical")
            if warning >= critical:
                msg = f"{resource.capitalize()} warning threshold must be less than critical threshold"
                raise ThresholdConfigError(
                    msg,
                    hint=f"Set {resource}_warning below {resource}_critical ({critical}).",
                )


ResourceName = Literal["memory", "disk", "cpu"]
AlertLevel = Literal["warning", "critical"]


@dataclass
class ResourceAlert:
    """A resource crossed one of its thresholds."""

    level: AlertLevel
    resource: ResourceName
    current_usage: float
    threshold: float
    message: str
    timestamp: datetime
    recommendation: str | None = None


@dataclass
class ResourceDataPoint:
    timestamp: datetime
    memory_usage: float
    disk_usage: float
    cpu_usage: float


@dataclass
class UsageStats:
    current: float = 0.0
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0


@dataclass
class ResourceStatistics:
    memory: UsageStats = field(default_factory=UsageStats)
    disk: UsageStats = field(default_factory=UsageStats)
    cpu: UsageStats = field(default_factory=UsageStats)


_ALERT_ADVICE: dict[tuple[ResourceName, AlertLevel], tuple[str, str]] = {
    ("memory", "critical"): ("Critical memory usage", "Reduce parallel execution or free memory"),
    ("memory", "warning"): ("High memory usage", "Consider reducing parallel execution"),
    ("disk", "critical"): ("Critical disk usage", "Clean up disk space immediately"),
    ("disk", "warning"): ("High disk usage", "Monitor disk space closely"),
    ("cpu", "critical"): ("Critical CPU usage", "Reduce concurrent operations"),
    ("cpu", "warning"): ("High CPU usage", "Consider reducing parallel execution"),
}


class ResourceMonitor:
    """Periodically samples host resources while a matrix executes.

    Observes and advises only; nothing here limits execution. Alerts for the
    same resource and level are emitted at most once per throttle window.
    """

    thresholds: ResourceThresholds
    check_interval: float
    _on_alert: Callable[[ResourceAlert], None] | None
    _on_update: Callable[[SystemResources], None] | None
    _on_recommendation: Callable[[str], None] | None
    _sampler: Callable[[], SystemResources]
    _clock: Callable[[], float]
    _history: deque[ResourceDataPoint]
    _last_alerts: dict[str, float]
    _task: asyncio.Task[None] | None

    def __init__(
        self,
        thresholds: ResourceThresholds | None = None,
        on_alert: Callable[[ResourceAlert], None] | None = None,
        on_update: Callable[[SystemResources], None] | None = None,
        on_recommendation: Callable[[str], None] | None = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        max_history_size: int = DEFAULT_MAX_HISTORY_SIZE,
        sampler: Callable[[], SystemResources] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize monitor.

        Args:
            thresholds: Alert levels; defaults are used if omitted
            on_alert: Called with each (throttled) alert
            on_update: Called with every sample
            on_recommendation: Called with advisory messages
            check_interval: Seconds between samples
            max_history_size: Samples kept for statistics
            sampler: Replaces get_system_resources, mainly for tests
            clock: Monotonic time source used for throttling

        """
        if max_history_size < 1:
            msg = "max_history_size must be at least 1"
            raise ValueError(msg)
        self.thresholds = thresholds or ResourceThresholds()
        self.check_interval = check_interval
        self._on_alert = on_alert
        self._on_update = on_update
        self._on_recommendation = on_recommendation
        self._sampler = sampler or get_system_resources
        self._clock = clock
        self._history = deque(maxlen=max_history_size)
        self._last_alerts = {}
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start background sampling on the running event loop."""
        if self.running:
            self.stop()
        self._task = asyncio.get_running_loop().create_task(self._sample_loop())

    def stop(self) -> None:
        """Stop background sampling. Safe to call when not started."""
        if self._task is None:
            return
        _ = self._task.cancel()
        self._task = None

    async def _sample_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                _ = self.sample_now()
            except Exception as exc:
                logger.exception("Resource monitoring tick failed", exc_info=exc)

    def sample_now(self) -> SystemResources:
        """Take one sample: record, check thresholds, notify, advise."""
        resources = self._sampler()
        self._history.append(
            ResourceDataPoint(
                timestamp=datetime.now(timezone.utc),
                memory_usage=resources.memory_usage,
                disk_usage=resources.disk_usage,
                cpu_usage=resources.cpu_usage,
            )
        )
        self._check_thresholds(resources)
        if self._on_update is not None:
            self._on_update(resources)
        self._generate_recommendations(resources)
        return resources

    def update_thresholds(self, thresholds: ResourceThresholds) -> None:
        # ResourceThresholds validates itself on construction
        self.thresholds = thresholds

    def get_history(self) -> list[ResourceDataPoint]:
        return list(self._history)

    def get_statistics(self) -> ResourceStatistics:
        """Current, average, min and max per resource over the history."""
        if not self._history:
            return ResourceStatistics()

        def stats(values: list[float]) -> UsageStats:
            return UsageStats(
                current=values[-1],
                average=sum(values) / len(values),
                min=min(values),
                max=max(values),
            )

        return ResourceStatistics(
            memory=stats([p.memory_usage for p in self._history]),
            disk=stats([p.disk_usage for p in self._history]),
            cpu=stats([p.cpu_usage for p in self._history]),
        )

    def check_disk_space(self, required_bytes: int) -> bool:
        """Return True if the free disk space covers ``required_bytes``."""
        resources = self._sampler()
        if resources.free_disk >= required_bytes:
            return True
        self._emit(
            ResourceAlert(
                level="critical",
                resource="disk",
                current_usage=resources.disk_usage,
                threshold=self.thresholds.disk_critical,
                message=(
                    f"Insufficient disk space: {format_bytes(required_bytes)} required, "
                    f"{format_bytes(resources.free_disk)} available"
                ),
                timestamp=datetime.now(timezone.utc),
                recommendation="Free up disk space or reduce matrix size",
            )
        )
        return False

    def _check_thresholds(self, resources: SystemResources) -> None:
        usage: dict[ResourceName, float] = {
            "memory": resources.memory_usage,
            "disk": resources.disk_usage,
            "cpu": resources.cpu_usage,
        }
        now = datetime.now(timezone.utc)
        for resource, current in usage.items():
            critical = getattr(self.thresholds, f"{resource}_critical")
            warning = getattr(self.thresholds, f"{resource}_warning")
            level: AlertLevel
            if current >= critical:
                level, threshold = "critical", critical
            elif current >= warning:
                level, threshold = "warning", warning
            else:
                continue
            label, advice = _ALERT_ADVICE[(resource, level)]
            self._emit_throttled(
                f"{resource}-{level}",
                ResourceAlert(
                    level=level,
                    resource=resource,
                    current_usage=current,
                    threshold=threshold,
                    message=f"{label}: {current:.1f}%",
                    timestamp=now,
                    recommendation=advice,
                ),
            )

    def _emit_throttled(self, key: str, alert: ResourceAlert) -> None:
        now = self._clock()
        last = self._last_alerts.get(key)
        if last is not None and now - last <= ALERT_THROTTLE_SECONDS:
            return
        self._last_alerts[key] = now
        self._emit(alert)

    def _emit(self, alert: ResourceAlert) -> None:
        logger.warning("%s", alert.message)
        if self._on_alert is not None:
            self._on_alert(alert)

    def _generate_recommendations(self, resources: SystemResources) -> None:
        if self._on_recommendation is None:
            return
        high = sum(
            1
            for value in (resources.memory_usage, resources.disk_usage, resources.cpu_usage)
            if value > HIGH_USAGE_PERCENT
        )
        if high >= 2:  # noqa: PLR2004
            self._on_recommendation(
                "Multiple resources at high usage - consider reducing parallel execution"
            )
        if resources.cpu_usage > HIGH_CPU_PERCENT and resources.cpu_cores > MIN_CORES_FOR_CPU_ADVICE:
            limit = max(1, resources.cpu_cores // 2)
            self._on_recommendation(
                f"High CPU usage detected - consider limiting concurrent runs to {limit}"
            )


def format_bytes(num_bytes: float) -> str:
    """Format a byte count as ``1.5 GB``."""
    if num_bytes == 0:
        return "0 B"
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024:  # noqa: PLR2004
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TB"


def parse_bytes(text: str) -> int:
    """Parse ``"1.5 GB"`` into bytes. Unrecognized input gives 0."""
    match = re.match(r"^\s*([\d.]+)\s*([A-Za-z]+)\s*$", text)
    if match is None:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    return int(value * _BYTE_UNITS.get(match.group(2).upper(), 1))
