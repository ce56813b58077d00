"""Registry of live process handles with resource sampling.

Live handles sit in an arena keyed by generated handle id (with a pid
index enforcing one live handle per pid). Retired handles are folded into
``ProcessRecord``s kept in a bounded history for metrics.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import psutil

from cmdsupervisor.core.models import ExecutionMode, ProcessRecord, ResourceMetrics, _utc_now
from cmdsupervisor.core.process import ProcessHandle, split_returncode

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL = 1.0
DEFAULT_HISTORY_SIZE = 256


@dataclass
class TrackedProcess:
    """Tracker-side view of one live handle."""

    handle: ProcessHandle
    owner: ExecutionMode
    owner_id: str
    metrics: ResourceMetrics = field(default_factory=ResourceMetrics)
    output_counter: Callable[[], int] | None = None
    ps: psutil.Process | None = None


def _sample_tree(proc: psutil.Process) -> tuple[float, int]:
    """Sum CPU seconds and RSS over a process and its descendants."""
    cpu = 0.0
    rss = 0
    try:
        members = [proc, *proc.children(recursive=True)]
    except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
        members = [proc]
    for member in members:
        try:
            with member.oneshot():
                times = member.cpu_times()
                cpu += times.user + times.system
                rss += member.memory_info().rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            continue
    return cpu, rss


class ProcessTracker:
    """Arena of live process handles plus a bounded history of retired ones.

    USAGE:
        tracker = ProcessTracker()
        tracker.start()                       # background sampler
        tracker.register(handle, ExecutionMode.BACKGROUND, task_id)
        ...
        record = tracker.retire(handle.handle_id, returncode)
    """

    def __init__(
        self,
        sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        self.sample_interval = sample_interval
        self._live: dict[str, TrackedProcess] = {}
        self._by_pid: dict[int, str] = {}
        self._history: deque[ProcessRecord] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sampler: threading.Thread | None = None

    # -- registration -------------------------------------------------------

    def register(
        self,
        handle: ProcessHandle,
        owner: ExecutionMode,
        owner_id: str,
        output_counter: Callable[[], int] | None = None,
    ) -> TrackedProcess:
        """Add a live handle.

        A pid still mapped to a handle whose child was already reaped is
        taken over: the OS may reuse it before that handle is retired.

        Raises:
            ValueError: If another live handle already owns this pid.
        """
        try:
            ps = psutil.Process(handle.pid)
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            ps = None

        entry = TrackedProcess(
            handle=handle, owner=owner, owner_id=owner_id, output_counter=output_counter, ps=ps
        )
        with self._lock:
            existing = self._by_pid.get(handle.pid)
            if existing is not None and existing != handle.handle_id:
                previous = self._live.get(existing)
                if previous is not None and not previous.handle.exited:
                    raise ValueError(f"pid {handle.pid} is already tracked by {existing}")
                logger.debug(f"pid {handle.pid} reused; {existing} was already reaped")
            self._live[handle.handle_id] = entry
            self._by_pid[handle.pid] = handle.handle_id
        logger.debug(f"Tracking {handle.handle_id} (pid {handle.pid}) for {owner.value}:{owner_id}")
        return entry

    def retire(self, handle_id: str, returncode: int | None = None) -> ProcessRecord | None:
        """Move a handle from the live arena into history.

        Returns None if the handle was not tracked (already retired).
        """
        with self._lock:
            entry = self._live.pop(handle_id, None)
            if entry is None:
                return None
            if self._by_pid.get(entry.handle.pid) == handle_id:
                del self._by_pid[entry.handle.pid]

        metrics = self._refresh_output(entry)
        exit_code, sig_name = split_returncode(returncode)
        record = ProcessRecord(
            handle_id=handle_id,
            pid=entry.handle.pid,
            owner=entry.owner,
            owner_id=entry.owner_id,
            command=entry.handle.command,
            started_at=entry.handle.started_at,
            ended_at=_utc_now(),
            duration_ms=entry.handle.elapsed_ms(),
            exit_code=exit_code,
            signal=sig_name,
            metrics=metrics,
        )
        with self._lock:
            self._history.append(record)
        return record

    # -- lookup -------------------------------------------------------------

    def get(self, handle_id: str) -> TrackedProcess | None:
        with self._lock:
            return self._live.get(handle_id)

    def get_by_pid(self, pid: int) -> TrackedProcess | None:
        with self._lock:
            handle_id = self._by_pid.get(pid)
            return self._live.get(handle_id) if handle_id else None

    def live(self) -> list[TrackedProcess]:
        with self._lock:
            return list(self._live.values())

    def history(self) -> list[ProcessRecord]:
        with self._lock:
            return list(self._history)

    def metrics(self, handle_id: str) -> ResourceMetrics | None:
        entry = self.get(handle_id)
        if entry is None:
            return None
        return self._refresh_output(entry)

    # -- sampling -----------------------------------------------------------

    def sample(self, handle_id: str) -> ResourceMetrics | None:
        """Take one sample of a live handle's process tree."""
        entry = self.get(handle_id)
        if entry is None:
            return None
        self._sample_entry(entry)
        return self._refresh_output(entry)

    def sample_all(self) -> None:
        for entry in self.live():
            self._sample_entry(entry)

    def _sample_entry(self, entry: TrackedProcess) -> None:
        # The handle may exit between enumeration and sampling.
        if entry.ps is None or not entry.handle.is_running():
            return
        cpu, rss = _sample_tree(entry.ps)
        m = entry.metrics
        entry.metrics = ResourceMetrics(
            cpu_time_seconds=max(m.cpu_time_seconds, cpu),
            peak_rss_bytes=max(m.peak_rss_bytes, rss),
            output_bytes=m.output_bytes,
            sampled_at=_utc_now(),
        )

    def _refresh_output(self, entry: TrackedProcess) -> ResourceMetrics:
        if entry.output_counter is not None:
            entry.metrics = entry.metrics.model_copy(update={"output_bytes": entry.output_counter()})
        return entry.metrics

    def _run_sampler(self) -> None:
        while not self._stop.wait(self.sample_interval):
            try:
                self.sample_all()
            except Exception:
                logger.exception("Resource sampling failed")

    def start(self) -> None:
        """Start the periodic sampler thread (idempotent)."""
        if self._sampler is not None and self._sampler.is_alive():
            return
        self._stop.clear()
        self._sampler = threading.Thread(target=self._run_sampler, name="tracker-sampler", daemon=True)
        self._sampler.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sampler is not None:
            self._sampler.join(timeout=self.sample_interval + 1)
            self._sampler = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)
