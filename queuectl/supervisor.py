import logging
import os
import signal
import time
from multiprocessing import Process
from pathlib import Path
from threading import Event, Thread
from typing import Dict, List, Optional

from .config import Config
from .queue import JobQueue
from .storage import Storage
from .utils import db_path, generate_worker_id, setup_logging
from .worker import DEFAULT_GRACE_PERIOD, DEFAULT_POLL_INTERVAL, Worker

logger = logging.getLogger(__name__)

PID_PREFIX = "worker-"
PID_SUFFIX = ".pid"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


class LivenessRegistry:
    """One pid file per worker id in the data directory."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def _path(self, worker_id: str) -> Path:
        # worker ids generated here already start with the prefix
        name = worker_id if worker_id.startswith(PID_PREFIX) else PID_PREFIX + worker_id
        return self.data_dir / f"{name}{PID_SUFFIX}"

    def register(self, worker_id: str, pid: Optional[int] = None) -> Path:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(worker_id)
        path.write_text(str(pid if pid is not None else os.getpid()))
        return path

    def unregister(self, worker_id: str) -> None:
        self._path(worker_id).unlink(missing_ok=True)

    def entries(self) -> Dict[str, int]:
        """Map of worker id to pid for every readable pid file."""
        found: Dict[str, int] = {}
        if not self.data_dir.exists():
            return found
        for path in sorted(self.data_dir.glob(f"{PID_PREFIX}*{PID_SUFFIX}")):
            try:
                found[path.name[: -len(PID_SUFFIX)]] = int(path.read_text().strip())
            except (OSError, ValueError):
                logger.debug("Ignoring unreadable pid file %s", path)
        return found

    def is_alive(self, worker_id: str) -> bool:
        pid = self.entries().get(self._path(worker_id).name[: -len(PID_SUFFIX)])
        return pid is not None and _pid_alive(pid)

    def active_workers(self) -> Dict[str, int]:
        """Live workers only; pid files of dead processes are removed."""
        alive: Dict[str, int] = {}
        for worker_id, pid in self.entries().items():
            if _pid_alive(pid):
                alive[worker_id] = pid
            else:
                self.unregister(worker_id)
        return alive


def run_worker_process(
    worker_id: str,
    data_dir: str,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    grace_period: float = DEFAULT_GRACE_PERIOD,
    verbose: bool = False,
) -> None:
    """Entry point of one worker OS process.

    The loop runs on a daemon thread; the main thread waits for SIGTERM/SIGINT,
    then gives the in-flight job ``grace_period`` seconds before exiting.
    """
    setup_logging(verbose)
    data_path = Path(data_dir)
    storage = Storage(db_path(data_path))
    worker = Worker(JobQueue(storage, Config(storage)), worker_id, poll_interval)
    registry = LivenessRegistry(data_path)
    shutdown = Event()

    def _handle_signal(signum, frame):
        logger.info("Worker %s received %s", worker_id, signal.Signals(signum).name)
        worker.request_stop()
        shutdown.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    registry.register(worker_id)

    thread = Thread(target=worker.run, daemon=True, name=worker_id)
    thread.start()
    try:
        while not shutdown.wait(0.5):
            if not thread.is_alive():
                break
        worker.stop(grace_period)
        thread.join(timeout=1)
    finally:
        registry.unregister(worker_id)


class WorkerSupervisor:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.registry = LivenessRegistry(self.data_dir)

    def start(
        self,
        count: int = 1,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        verbose: bool = False,
    ) -> List[Process]:
        """Spawn ``count`` worker processes"""
        if count < 1:
            raise ValueError("Count must be a positive integer")
        processes: List[Process] = []
        for _ in range(count):
            worker_id = generate_worker_id()
            process = Process(
                target=run_worker_process,
                args=(worker_id, str(self.data_dir), poll_interval, grace_period, verbose),
                name=worker_id,
                daemon=False,
            )
            process.start()
            processes.append(process)
            logger.info("Worker %s started (pid %s)", worker_id, process.pid)
        return processes

    def wait(self, processes: List[Process], grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """Block until every worker exits; Ctrl+C stops them gracefully."""
        try:
            while any(p.is_alive() for p in processes):
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Received stop signal. Stopping workers gracefully...")
            # children share the terminal's process group and got SIGINT too
            deadline = time.monotonic() + grace_period + 5
            for process in processes:
                process.join(timeout=max(0.0, deadline - time.monotonic()))
            for process in processes:
                if process.is_alive():
                    process.kill()
                    process.join()
                    self.registry.unregister(process.name)

    def stop(self, timeout: float = DEFAULT_GRACE_PERIOD + 5) -> int:
        """SIGTERM every registered worker, SIGKILL the ones still alive after ``timeout``."""
        workers = self.registry.active_workers()
        if not workers:
            return 0

        for worker_id, pid in workers.items():
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                self.registry.unregister(worker_id)

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not any(_pid_alive(pid) for pid in workers.values()):
                break
            time.sleep(0.2)

        for worker_id, pid in workers.items():
            if _pid_alive(pid):
                logger.warning("Worker %s did not stop in time, killing pid %s", worker_id, pid)
                try:
                    os.kill(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            self.registry.unregister(worker_id)
        return len(workers)

    def active_count(self) -> int:
        return len(self.registry.active_workers())
