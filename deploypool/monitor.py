from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import time
from typing import Protocol

import psutil
from rich.bar import Bar
from rich.progress import (
    Progress,
    ProgressColumn,
    SpinnerColumn,
    TaskID,
    TextColumn,
)
from rich.text import Text

from deploypool.events import (
    DispatchEvent,
    JobAssignedEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobRequeuedEvent,
    JobSubmittedEvent,
    WorkerExitedEvent,
    WorkerStartedEvent,
)

POOL_PREFIX = "Pool |"


class DispatchMonitor(Protocol):
    """Protocol for dispatch monitors to support dependency injection."""

    def handle_event(self, event: DispatchEvent) -> None:
        """Handle dispatcher events."""
        ...


class NoOpDispatchMonitor:
    """A monitor that does nothing. The dispatcher's default."""

    def handle_event(self, event: DispatchEvent) -> None:
        pass


@dataclass
class NetworkStats:
    """Job counts for one network."""

    running: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    task_id: TaskID | None = None
    durations: list[float] = field(default_factory=list)


class ConditionalSpinnerColumn(SpinnerColumn):
    """Spinner column hidden for the pool stats line."""

    def render(self, task) -> Text:
        if task.description and task.description.startswith(POOL_PREFIX):
            return Text("")
        return super().render(task)


class StatusBarColumn(ProgressColumn):
    """Progress bar column whose color depends on task.fields['status'].

    Supported statuses:
      - "running" (default): jobs in flight
      - "success": every job so far succeeded
      - "failed": at least one job failed
    """

    def __init__(self, width: int | None = 30) -> None:
        super().__init__()
        self.width = width

    def render(self, task) -> Text:
        if task.description and task.description.startswith(POOL_PREFIX):
            return Text("")

        status = task.fields.get("status", "running")
        color = {"failed": "red", "success": "green"}.get(status, "cyan")

        return Bar(
            size=task.total or 1,
            begin=0,
            end=task.completed,
            width=self.width,
            color=color,
            bgcolor="grey37",
        )


class RichDispatchMonitor:
    """Terminal display of the worker pool and per-network job progress."""

    def __init__(self) -> None:
        self.progress = Progress(
            ConditionalSpinnerColumn(),
            TextColumn("{task.description}"),
            StatusBarColumn(width=30),
        )
        self.network_stats: dict[str, NetworkStats] = {}
        self.job_id_to_network: dict[int, str] = {}
        self.busy_workers: set[int] = set()
        self.live_workers: set[int] = set()
        self.crashes = 0
        self.pool_task_id: TaskID | None = None
        # (timestamp, cpu_percent, ram_percent) over a 5-second window
        self.system_stats_history: deque[tuple[float, float, float]] = deque()

    def __enter__(self) -> RichDispatchMonitor:
        self.progress.__enter__()
        self.pool_task_id = self.progress.add_task(f"{POOL_PREFIX} starting", total=1, status="running")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return self.progress.__exit__(exc_type, exc_val, exc_tb)

    def handle_event(self, event: DispatchEvent) -> None:
        match event:
            case WorkerStartedEvent():
                self.live_workers.add(event.worker_id)

            case WorkerExitedEvent():
                self.live_workers.discard(event.worker_id)
                self.busy_workers.discard(event.worker_id)
                if event.exitcode not in (0, None):
                    self.crashes += 1

            case JobSubmittedEvent():
                self.job_id_to_network[event.job_id] = event.chain_name
                stats = self._ensure_network_task(event.chain_name)
                stats.total += 1
                self._update_network(event.chain_name)

            case JobAssignedEvent():
                self.busy_workers.add(event.worker_id)
                network = self.job_id_to_network.get(event.job_id)
                if network:
                    self.network_stats[network].running += 1
                    self._update_network(network)

            case JobRequeuedEvent():
                self.busy_workers.discard(event.worker_id)
                network = self.job_id_to_network.get(event.job_id)
                if network:
                    stats = self.network_stats[network]
                    stats.running = max(0, stats.running - 1)
                    self._update_network(network)

            case JobCompletedEvent():
                self._finish(event.job_id, event.worker_id, failed=False, duration=event.duration_seconds)

            case JobFailedEvent():
                self._finish(event.job_id, event.worker_id, failed=True)

        self._update_pool()

    def _finish(self, job_id: int, worker_id: int | None, failed: bool, duration: float | None = None) -> None:
        if worker_id is not None:
            self.busy_workers.discard(worker_id)

        network = self.job_id_to_network.pop(job_id, None)
        if network is None:
            return

        stats = self.network_stats[network]
        if worker_id is not None:
            stats.running = max(0, stats.running - 1)
        if failed:
            stats.failed += 1
        else:
            stats.completed += 1
        if duration is not None:
            stats.durations.append(duration)

        self._update_network(network)

    def _ensure_network_task(self, network: str) -> NetworkStats:
        if network not in self.network_stats:
            stats = NetworkStats()
            stats.task_id = self.progress.add_task(f"  [blue]{network}[/]: starting", total=0, status="running")
            self.network_stats[network] = stats
        return self.network_stats[network]

    def _update_network(self, network: str) -> None:
        stats = self.network_stats[network]
        if stats.task_id is None:
            return

        parts = []
        if stats.running:
            parts.append(f"{stats.running} running")
        queued = stats.total - stats.running - stats.completed - stats.failed
        if queued > 0:
            parts.append(f"{queued} queued")
        parts.append(f"{stats.completed} completed")
        if stats.failed:
            parts.append(f"{stats.failed} failed")

        avg_text = ""
        if stats.durations:
            avg_text = f" μ{sum(stats.durations) / len(stats.durations):.0f}s"

        processed = stats.completed + stats.failed
        if stats.failed:
            status = "failed"
        elif stats.total and processed >= stats.total:
            status = "success"
        else:
            status = "running"

        self.progress.update(
            stats.task_id,
            description=f"  [blue]{network}[/]: {', '.join(parts)}{avg_text}",
            completed=processed,
            total=stats.total,
            status=status,
        )

    def _update_pool(self) -> None:
        """Refresh the pool line with busy workers and 5-second CPU/RAM averages."""
        if self.pool_task_id is None:
            return

        now = time.time()
        self.system_stats_history.append((now, psutil.cpu_percent(interval=0.0), psutil.virtual_memory().percent))
        while self.system_stats_history and self.system_stats_history[0][0] < now - 5.0:
            self.system_stats_history.popleft()

        samples = len(self.system_stats_history)
        avg_cpu = sum(cpu for _, cpu, _ in self.system_stats_history) / samples
        avg_ram = sum(ram for _, _, ram in self.system_stats_history) / samples

        description = (
            f"{POOL_PREFIX} {len(self.busy_workers)}/{len(self.live_workers)} busy"
            f" | cpu {avg_cpu:.0f}% ram {avg_ram:.0f}%"
        )
        if self.crashes:
            description += f" | {self.crashes} restarts"

        self.progress.update(self.pool_task_id, description=description)
