import itertools
import logging
import threading
import time
from typing import Iterable, List, Optional

from machina.config import settings
from machina.modules.deployments.log_registry import LogBroadcastRegistry
from machina.modules.deployments.schemas import LogRecord
from machina.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)

REDACTED = "***"


class DeploymentLogStream:
    """
    Log sink for one deployment's workflow.

    Numbers records, masks secret values, publishes live to the registry and
    persists in batches (on ``flush_interval`` and on ``flush()``).
    """

    def __init__(
        self,
        deployment_id: str,
        registry: LogBroadcastRegistry,
        deployments: DeploymentService,
        secrets: Optional[Iterable[str]] = None,
        flush_interval: Optional[float] = None,
        start_sequence: int = 0,
    ):
        self.deployment_id = deployment_id
        self.registry = registry
        self.deployments = deployments
        self.secrets = [s for s in (secrets or []) if s]
        self.flush_interval = settings.log_flush_interval_sec if flush_interval is None else flush_interval
        self._sequence = itertools.count(start_sequence + 1)
        self._pending: List[LogRecord] = []
        self._lock = threading.Lock()
        self._last_flush = time.monotonic()

    def __call__(self, level: str, message: str, source: str = "system") -> LogRecord:
        return self.emit(level, message, source)

    def add_secrets(self, secrets: Iterable[str]) -> None:
        self.secrets.extend(s for s in secrets if s)

    def _redact(self, message: str) -> str:
        for secret in self.secrets:
            message = message.replace(secret, REDACTED)
        return message

    def emit(self, level: str, message: str, source: str = "system") -> LogRecord:
        with self._lock:
            record = LogRecord(
                deployment_id=self.deployment_id,
                sequence=next(self._sequence),
                level=level,
                message=self._redact(message),
                source=source,
            )
            # Publish under the lock so listeners see sequence order
            self.registry.publish(self.deployment_id, record)
            self._pending.append(record)
            due = time.monotonic() - self._last_flush >= self.flush_interval
        if due:
            self.flush()
        return record

    def info(self, message: str, source: str = "system") -> LogRecord:
        return self.emit("info", message, source)

    def warn(self, message: str, source: str = "system") -> LogRecord:
        return self.emit("warn", message, source)

    def error(self, message: str, source: str = "system") -> LogRecord:
        return self.emit("error", message, source)

    def flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
            self._last_flush = time.monotonic()
        if not pending:
            return
        try:
            self.deployments.append_logs(self.deployment_id, pending)
        except Exception as e:
            logger.error(f"Failed to persist {len(pending)} log records for {self.deployment_id}: {e}")
            with self._lock:
                self._pending = pending + self._pending
