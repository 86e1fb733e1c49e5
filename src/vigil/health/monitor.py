"""Health Monitor - periodic liveness and resource sampling.

Runs on its own fixed interval, independent of step cadence, so it keeps
sampling while the job itself is blocked. Each sample reads the state store
and the host, publishes a :class:`HealthSnapshot` to a bounded ring buffer,
and raises deduplicated alerts. It never changes task status: a stalled
task gets a critical alert, and what happens next is an operator decision.

Checks:
    - state_store: status record readable (corrupt store is critical)
    - heartbeat: stall warning, then critical after a longer threshold
    - retry_failures: consecutive transient failures on the current step
    - resources: disk, memory and load per CPU (pressure lowers retry budgets)
    - progress: running for hours with little of the plan done
    - network: configured endpoints reachable (skipped when none are set)
    - error_patterns: recent failures dominated by API errors, by one repeated
      error, or by errors a retry will not cure (permission denied, missing file)

Example:
    >>> monitor = HealthMonitor(store)
    >>> report = monitor.sample_once()
    >>> report.status
    <HealthStatus.HEALTHY: 'healthy'>
"""

from __future__ import annotations

import re
import threading
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import psutil

from vigil.core.errors import ErrorCategory, StateCorruptError, StateStoreError
from vigil.core.hashing import compute_hash
from vigil.core.logging import get_logger
from vigil.core.models import AlertSeverity, ErrorClass, HealthSnapshot, Task, TaskStatus
from vigil.core.timestamps import seconds_since, utc_now
from vigil.health.network import ConnectivityChecker
from vigil.health.thresholds import HealthThresholds
from vigil.state.store import StateStore

logger = get_logger(__name__)

LIVE_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.RETRY_PENDING, TaskStatus.RECOVERING})

_API_CATEGORIES = frozenset({ErrorCategory.RATE_LIMIT.value, ErrorCategory.TIMEOUT.value})
_API_PATTERN = re.compile(r"\bapi\b|rate.?limit|quota|too many requests|time.?out|timed out", re.IGNORECASE)
_CRITICAL_PATTERNS = {
    "segmentation fault": re.compile(r"segmentation.fault", re.IGNORECASE),
    "core dumped": re.compile(r"core.dumped", re.IGNORECASE),
    "permission denied": re.compile(r"permission.denied", re.IGNORECASE),
    "file not found": re.compile(r"file.not.found|no such file", re.IGNORECASE),
    "command not found": re.compile(r"command.not.found", re.IGNORECASE),
}


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    """Overall result of one sample."""

    status: HealthStatus
    checks: list[HealthCheckResult]
    snapshot: HealthSnapshot
    task: Task | None = None
    alerts_raised: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.snapshot.timestamp.isoformat(),
            "task_id": self.task.id if self.task else None,
            "task_status": self.task.status.value if self.task else None,
            "alerts_raised": self.alerts_raised,
            "snapshot": self.snapshot.to_dict(),
            "checks": [
                {
                    "name": check.name,
                    "status": check.status.value,
                    "message": check.message,
                    "details": check.details,
                }
                for check in self.checks
            ],
        }


@dataclass(frozen=True)
class HostMetrics:
    load_per_cpu: float | None
    memory_percent: float | None
    disk_free_ratio: float | None


class HostSampler:
    """Reads host resource metrics with psutil.

    Disk usage is measured on the filesystem holding *path* (the state
    directory), which is the one that must not fill up.
    """

    def __init__(self, path: Path):
        self.path = path

    def sample(self) -> HostMetrics:
        return HostMetrics(
            load_per_cpu=self._load_per_cpu(),
            memory_percent=self._memory_percent(),
            disk_free_ratio=self._disk_free_ratio(),
        )

    def _load_per_cpu(self) -> float | None:
        try:
            load1, _, _ = psutil.getloadavg()
        except (OSError, AttributeError) as e:
            logger.warning("host_metric_unavailable", metric="load", error=str(e))
            return None
        return round(load1 / (psutil.cpu_count() or 1), 3)

    def _memory_percent(self) -> float | None:
        try:
            return float(psutil.virtual_memory().percent)
        except OSError as e:
            logger.warning("host_metric_unavailable", metric="memory", error=str(e))
            return None

    def _disk_free_ratio(self) -> float | None:
        target = self.path
        while not target.exists() and target != target.parent:
            target = target.parent
        try:
            usage = psutil.disk_usage(str(target))
        except OSError as e:
            logger.warning("host_metric_unavailable", metric="disk", error=str(e))
            return None
        return round(usage.free / usage.total, 4) if usage.total else None


def _worst(statuses: list[HealthStatus]) -> HealthStatus:
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Samples health on an interval and raises alerts; read-only w.r.t. task state."""

    def __init__(
        self,
        store: StateStore,
        thresholds: HealthThresholds | None = None,
        *,
        sampler: HostSampler | None = None,
        network: ConnectivityChecker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.thresholds = thresholds or HealthThresholds()
        self.sampler = sampler or HostSampler(store.state_dir)
        self.network = network or ConnectivityChecker(
            self.thresholds.network_check_urls, timeout=self.thresholds.network_timeout_seconds
        )
        self._clock = clock
        self._buffer: deque[HealthSnapshot] = deque(maxlen=self.thresholds.ring_buffer_size)
        self._loaded = False

    @property
    def snapshots(self) -> list[HealthSnapshot]:
        return list(self._buffer)

    def _load_buffer(self) -> None:
        if self._loaded:
            return
        try:
            self._buffer.extend(self.store.read_health())
        except StateStoreError as e:
            logger.warning("health_history_unreadable", error=e.message)
        self._loaded = True

    # ── Sampling ─────────────────────────────────────────────────

    def sample_once(self, *, publish: bool = True) -> HealthReport:
        """Take one sample, raise alerts, and (if *publish*) persist the ring buffer."""
        self._load_buffer()
        now = self._clock()
        checks: list[HealthCheckResult] = []
        alerts_raised = 0

        task: Task | None = None
        try:
            task = self.store.read_optional()
            checks.append(
                HealthCheckResult(
                    "state_store",
                    HealthStatus.HEALTHY,
                    "Status record OK" if task else "No active task",
                )
            )
        except StateCorruptError as e:
            checks.append(HealthCheckResult("state_store", HealthStatus.UNHEALTHY, e.message))
            alerts_raised += self._alert(
                AlertSeverity.CRITICAL,
                f"State store is corrupt: {e.message}",
                task_id=None,
                kind="store_corrupt",
            )
        except StateStoreError as e:
            checks.append(HealthCheckResult("state_store", HealthStatus.UNHEALTHY, e.message))
            alerts_raised += self._alert(
                AlertSeverity.CRITICAL,
                f"State store unreadable: {e.message}",
                task_id=None,
                kind="store_unreadable",
            )

        metrics = self.sampler.sample()
        since_heartbeat: float | None = None
        consecutive = 0

        if task is not None:
            since_heartbeat = self._seconds_since_heartbeat(task, now)
            consecutive = self._consecutive_transient_failures(task)

            check, raised = self._check_heartbeat(task, since_heartbeat)
            checks.append(check)
            alerts_raised += raised

            check, raised = self._check_retry_failures(task, consecutive)
            checks.append(check)
            alerts_raised += raised

            check, raised = self._check_progress(task, now)
            checks.append(check)
            alerts_raised += raised

            check, raised = self._check_error_patterns(task)
            checks.append(check)
            alerts_raised += raised

        check, raised, pressure = self._check_resources(task, metrics)
        checks.append(check)
        alerts_raised += raised

        if self.network.enabled:
            check, raised = self._check_network(task)
            checks.append(check)
            alerts_raised += raised

        snapshot = HealthSnapshot(
            timestamp=now,
            cpu_load=metrics.load_per_cpu,
            memory_pressure=metrics.memory_percent,
            disk_free_ratio=metrics.disk_free_ratio,
            seconds_since_heartbeat=since_heartbeat,
            consecutive_transient_failures=consecutive,
            resource_pressure=pressure,
            task_status=task.status.value if task else None,
            step_index=task.current_step_index if task else None,
        )
        self._buffer.append(snapshot)
        if publish:
            self.store.write_health(list(self._buffer))

        report = HealthReport(
            status=_worst([c.status for c in checks]),
            checks=checks,
            snapshot=snapshot,
            task=task,
            alerts_raised=alerts_raised,
        )
        logger.debug("health_sampled", status=report.status.value, alerts_raised=alerts_raised)
        return report

    def run(self, stop_event: threading.Event, *, max_samples: int | None = None) -> int:
        """Sample every ``interval_seconds`` until *stop_event* is set.

        Returns the number of samples taken.
        """
        taken = 0
        logger.info("health_monitor_started", interval_seconds=self.thresholds.interval_seconds)
        while not stop_event.is_set():
            self.sample_once()
            taken += 1
            if max_samples is not None and taken >= max_samples:
                break
            stop_event.wait(self.thresholds.interval_seconds)
        logger.info("health_monitor_stopped", samples=taken)
        return taken

    # ── Individual checks ────────────────────────────────────────

    def _seconds_since_heartbeat(self, task: Task, now: datetime) -> float | None:
        candidates = [t for t in (task.last_heartbeat_at, self.store.read_heartbeat(task.id)) if t]
        if not candidates:
            return seconds_since(task.step_started_at, now)
        return seconds_since(max(candidates), now)

    def _consecutive_transient_failures(self, task: Task) -> int:
        records = self.store.read_retries(
            task.id, step_index=task.current_step_index, since=task.step_started_at
        )
        count = 0
        for record in reversed(records):
            if record.error_class is not ErrorClass.TRANSIENT:
                break
            count += 1
        return count

    def _check_heartbeat(self, task: Task, since: float | None) -> tuple[HealthCheckResult, int]:
        t = self.thresholds
        details = {
            "seconds_since_heartbeat": since,
            "warning_threshold_seconds": t.stall_warning_seconds,
            "critical_threshold_seconds": t.stall_critical_seconds,
        }
        if task.status not in LIVE_STATUSES or since is None:
            return HealthCheckResult("heartbeat", HealthStatus.HEALTHY, f"Task is {task.status.value}", details), 0

        if since >= t.stall_critical_seconds:
            raised = self._alert(
                AlertSeverity.CRITICAL,
                f"No heartbeat for {since:.0f}s on step {task.current_step_index}; job has likely crashed",
                task_id=task.id,
                step_index=task.current_step_index,
                kind="stall",
            )
            return HealthCheckResult("heartbeat", HealthStatus.UNHEALTHY, f"Likely crashed: {since:.0f}s since heartbeat", details), raised
        if since >= t.stall_warning_seconds:
            raised = self._alert(
                AlertSeverity.WARNING,
                f"No heartbeat for {since:.0f}s on step {task.current_step_index}; possible hang",
                task_id=task.id,
                step_index=task.current_step_index,
                kind="stall",
            )
            return HealthCheckResult("heartbeat", HealthStatus.DEGRADED, f"Possible hang: {since:.0f}s since heartbeat", details), raised
        return HealthCheckResult("heartbeat", HealthStatus.HEALTHY, f"Heartbeat {since:.0f}s ago", details), 0

    def _check_retry_failures(self, task: Task, consecutive: int) -> tuple[HealthCheckResult, int]:
        limit = self.thresholds.consecutive_failure_warning
        details = {"consecutive_transient_failures": consecutive, "warning_threshold": limit}
        if consecutive >= limit and task.status in LIVE_STATUSES:
            raised = self._alert(
                AlertSeverity.WARNING,
                f"{consecutive} consecutive transient failures on step {task.current_step_index}",
                task_id=task.id,
                step_index=task.current_step_index,
                kind="transient_failures",
            )
            return HealthCheckResult("retry_failures", HealthStatus.DEGRADED, f"{consecutive} consecutive transient failures", details), raised
        return HealthCheckResult("retry_failures", HealthStatus.HEALTHY, f"{consecutive} consecutive transient failures", details), 0

    def _check_progress(self, task: Task, now: datetime) -> tuple[HealthCheckResult, int]:
        t = self.thresholds
        elapsed = seconds_since(task.created_at, now) or 0.0
        ratio = task.progress_ratio
        details = {"elapsed_seconds": round(elapsed), "progress_ratio": round(ratio, 3)}
        if task.status is TaskStatus.RUNNING and elapsed > t.slow_progress_after_seconds and ratio < t.slow_progress_min_ratio:
            raised = self._alert(
                AlertSeverity.WARNING,
                f"Slow progress: {ratio:.0%} of steps done after {elapsed / 3600:.1f}h",
                task_id=task.id,
                step_index=task.current_step_index,
                kind="slow_progress",
            )
            return HealthCheckResult("progress", HealthStatus.DEGRADED, f"Slow progress ({ratio:.0%})", details), raised
        return HealthCheckResult("progress", HealthStatus.HEALTHY, f"{task.current_step_index}/{task.total_steps} steps done", details), 0

    def _check_resources(self, task: Task | None, metrics: HostMetrics) -> tuple[HealthCheckResult, int, bool]:
        t = self.thresholds
        problems: list[str] = []
        if metrics.disk_free_ratio is not None and (1 - metrics.disk_free_ratio) * 100 > t.max_disk_used_percent:
            problems.append(f"disk {100 - metrics.disk_free_ratio * 100:.0f}% used")
        if metrics.memory_percent is not None and metrics.memory_percent > t.max_memory_percent:
            problems.append(f"memory {metrics.memory_percent:.0f}% used")
        if metrics.load_per_cpu is not None and metrics.load_per_cpu > t.max_load_per_cpu:
            problems.append(f"load {metrics.load_per_cpu:.2f} per CPU")

        details = {
            "load_per_cpu": metrics.load_per_cpu,
            "memory_percent": metrics.memory_percent,
            "disk_free_ratio": metrics.disk_free_ratio,
        }
        if not problems:
            return HealthCheckResult("resources", HealthStatus.HEALTHY, "Resources OK", details), 0, False

        message = "Resource pressure: " + ", ".join(problems)
        raised = self._alert(
            AlertSeverity.WARNING,
            message,
            task_id=task.id if task else None,
            kind="resource_pressure",
        )
        return HealthCheckResult("resources", HealthStatus.DEGRADED, message, details), raised, True

    def _check_error_patterns(self, task: Task) -> tuple[HealthCheckResult, int]:
        t = self.thresholds
        records = self.store.read_retries(task.id)[-t.error_pattern_window :]
        api_errors = sum(
            1 for r in records if r.error_category in _API_CATEGORIES or _API_PATTERN.search(r.error_summary)
        )
        critical = sorted(
            name for name, pattern in _CRITICAL_PATTERNS.items() if any(pattern.search(r.error_summary) for r in records)
        )
        top = Counter(r.error_summary for r in records).most_common(1)
        details: dict[str, Any] = {
            "failures_examined": len(records),
            "api_errors": api_errors,
            "critical_patterns": critical,
            "most_repeated": {"error": top[0][0], "count": top[0][1]} if top else None,
        }

        problems: list[str] = []
        if api_errors >= t.api_error_warning:
            problems.append(f"{api_errors} API errors")
        if critical:
            problems.append("needs attention: " + ", ".join(critical))
        if top and top[0][1] >= t.repeated_error_warning:
            problems.append(f"same error {top[0][1]} times: {top[0][0]}")
        if not problems:
            return HealthCheckResult("error_patterns", HealthStatus.HEALTHY, f"No patterns in {len(records)} recent failures", details), 0

        message = "Error patterns in recent failures: " + "; ".join(problems)
        raised = self._alert(AlertSeverity.WARNING, message, task_id=task.id, kind="error_patterns")
        return HealthCheckResult("error_patterns", HealthStatus.DEGRADED, message, details), raised

    def _check_network(self, task: Task | None) -> tuple[HealthCheckResult, int]:
        results = self.network.check()
        down = [r for r in results if not r.reachable]
        details = {"endpoints": [r.to_dict() for r in results]}
        if not down:
            return HealthCheckResult("network", HealthStatus.HEALTHY, f"{len(results)} endpoint(s) reachable", details), 0

        message = f"{len(down)} of {len(results)} endpoint(s) unreachable: " + ", ".join(r.url for r in down)
        raised = self._alert(
            AlertSeverity.WARNING,
            f"Network problem: {message}",
            task_id=task.id if task else None,
            kind="network",
        )
        return HealthCheckResult("network", HealthStatus.DEGRADED, message, details), raised

    def _alert(
        self,
        severity: AlertSeverity,
        message: str,
        *,
        task_id: str | None,
        kind: str,
        step_index: int | None = None,
    ) -> int:
        alert = self.store.alerts.raise_alert(
            severity,
            message,
            task_id=task_id,
            source="health",
            step_index=step_index,
            fingerprint=compute_hash(task_id, "health", kind, severity.value, step_index),
            deduplicate=True,
        )
        return 1 if alert is not None else 0
