"""Thread-safe fan-out of deployment log records to live listeners."""
import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List

from machina.modules.deployments.schemas import LogRecord

logger = logging.getLogger(__name__)

Listener = Callable[[LogRecord], None]


class LogBroadcastRegistry:
    """
    deployment_id -> (buffered history, registered listeners).

    Publishing and subscribing take the same lock: a subscriber receives the
    replayed history and then exactly the records published after it, in order.
    Listeners must be quick; a slow listener stalls publishing for that process.
    """

    def __init__(self, retained_buffers: int = 200):
        self.retained_buffers = retained_buffers
        self._lock = threading.RLock()
        self._history: Dict[str, List[LogRecord]] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._retired: "OrderedDict[str, None]" = OrderedDict()
        self._running = False

    def start(self) -> None:
        with self._lock:
            self._running = True
        logger.info("Log broadcast registry started")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._listeners.clear()
            self._history.clear()
            self._retired.clear()
        logger.info("Log broadcast registry stopped")

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, deployment_id: str, listener: Listener) -> Callable[[], None]:
        """Replay buffered history to ``listener`` then register it. Returns an unsubscribe handle."""
        with self._lock:
            for record in self._history.get(deployment_id, []):
                listener(record)
            self._listeners.setdefault(deployment_id, []).append(listener)
            logger.debug(f"Listener subscribed to deployment {deployment_id}")

        def unsubscribe():
            self.unsubscribe(deployment_id, listener)

        return unsubscribe

    def unsubscribe(self, deployment_id: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(deployment_id)
            if not listeners:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                self._listeners.pop(deployment_id, None)
            logger.debug(f"Listener unsubscribed from deployment {deployment_id}")

    def publish(self, deployment_id: str, record: LogRecord) -> bool:
        """Buffer and deliver one record. Returns False when it was dropped as stale."""
        with self._lock:
            history = self._history.setdefault(deployment_id, [])
            if history and record.sequence <= history[-1].sequence:
                logger.debug(
                    f"Dropping stale record {record.sequence} for deployment {deployment_id}"
                )
                return False
            history.append(record)
            for listener in list(self._listeners.get(deployment_id, [])):
                try:
                    listener(record)
                except Exception as e:
                    logger.warning(f"Removing failing log listener for deployment {deployment_id}: {e}")
                    self.unsubscribe(deployment_id, listener)
            return True

    def history(self, deployment_id: str) -> List[LogRecord]:
        with self._lock:
            return list(self._history.get(deployment_id, []))

    def listener_count(self, deployment_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(deployment_id, []))

    def retire(self, deployment_id: str) -> None:
        """Mark a finished deployment; only the newest retired buffers are kept."""
        with self._lock:
            self._retired.pop(deployment_id, None)
            self._retired[deployment_id] = None
            while len(self._retired) > self.retained_buffers:
                oldest, _ = self._retired.popitem(last=False)
                self._history.pop(oldest, None)
                if not self._listeners.get(oldest):
                    self._listeners.pop(oldest, None)
