import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Runs one detached workflow per deployment on a bounded thread pool.

    Unlike fire-and-forget threads, every task stays observable through
    ``status()`` until it finishes, and failures are logged with the deployment id.
    """

    def __init__(self, max_workers: int = 8):
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tasks: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="deployment",
                )
        logger.info(f"Task supervisor started with {self.max_workers} workers")

    def shutdown(self, wait_for_tasks: bool = False) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_tasks, cancel_futures=not wait_for_tasks)
        logger.info("Task supervisor stopped")

    def submit(self, deployment_id: str, fn: Callable, *args, **kwargs) -> Future:
        with self._lock:
            if self._executor is None:
                raise RuntimeError("Task supervisor is not running")
            future = self._executor.submit(fn, *args, **kwargs)
            self._tasks[deployment_id] = future
        future.add_done_callback(lambda f: self._on_done(deployment_id, f))
        logger.info(f"Submitted workflow for deployment {deployment_id}")
        return future

    def _on_done(self, deployment_id: str, future: Future) -> None:
        with self._lock:
            if self._tasks.get(deployment_id) is future:
                self._tasks.pop(deployment_id, None)
        if future.cancelled():
            logger.warning(f"Workflow for deployment {deployment_id} was cancelled before it ran")
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Workflow for deployment {deployment_id} crashed: {error}", exc_info=error)

    def status(self, deployment_id: str) -> str:
        """'running', 'pending' or 'idle' (finished or never submitted)."""
        with self._lock:
            future = self._tasks.get(deployment_id)
        if future is None or future.done():
            return "idle"
        return "running" if future.running() else "pending"

    def active(self) -> List[str]:
        with self._lock:
            return [dep_id for dep_id, f in self._tasks.items() if not f.done()]

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until all submitted tasks finish. Returns False on timeout."""
        with self._lock:
            futures = list(self._tasks.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done
