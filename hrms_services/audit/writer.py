"""
Background audit writer.

Audit records are handed to a bounded queue and persisted by a single
background task, so the request path never waits on the audit store.
Failed or timed out writes are logged and dropped; nothing is retried.
"""
import asyncio
from typing import Optional

from hrms_services.audit.models import AuditRecord
from hrms_services.audit.store import AuditStore
from hrms_services.base_microservice import BaseMicroservice
from hrms_services.config import AUDIT_QUEUE_SIZE, AUDIT_WRITE_TIMEOUT_SECONDS
from hrms_services.errors import AuditWriteFailure

audit_service = BaseMicroservice("audit")

_STOP = object()


class AuditWriter:
    """
    Drains a bounded queue of AuditRecords into an AuditStore.

    ``submit`` never blocks: when the queue is full the record is dropped
    with a warning. ``start``/``stop`` are tied to the application lifespan;
    ``stop`` drains everything already queued before returning.
    """
    def __init__(
        self,
        store: AuditStore,
        max_queue_size: int = AUDIT_QUEUE_SIZE,
        write_timeout: float = AUDIT_WRITE_TIMEOUT_SECONDS,
        service: BaseMicroservice = audit_service,
    ):
        self.store = store
        self.max_queue_size = max_queue_size
        self.write_timeout = write_timeout
        self.service = service
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the background worker on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._worker = asyncio.create_task(self._run(), name="audit-writer")
        self.service.log_event("audit.writer.started", {"queue_size": self.max_queue_size})

    async def stop(self) -> None:
        """Flush queued records and stop the worker."""
        if not self.running:
            return
        # The sentinel must get in even if the queue is full
        await self._queue.put(_STOP)
        await self._worker
        self._worker = None
        self.service.log_event(
            "audit.writer.stopped",
            {"written": self.written, "failed": self.failed, "dropped": self.dropped},
        )

    def submit(self, record: AuditRecord) -> bool:
        """
        Queue a record for persistence.

        Returns:
            True if the record was queued, False if it was dropped
        """
        if not self.running:
            self.dropped += 1
            self.service.logger.warning(
                f"Audit writer not running, dropping {record.action} {record.entity_type.value} record"
            )
            return False
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            self.service.logger.warning(
                f"Audit write queue full, dropping {record.action} {record.entity_type.value} record"
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued record has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._write(item)
            finally:
                self._queue.task_done()

    async def _write(self, record: AuditRecord) -> None:
        try:
            await asyncio.wait_for(self.store.save(record), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self.write_timeout}s"
        except Exception as exc:
            reason = str(exc)
        else:
            self.written += 1
            return
        self.failed += 1
        failure = AuditWriteFailure(
            f"{record.action} {record.entity_type.value} {record.entity_id} by {record.actor_id}: {reason}"
        )
        self.service.log_error(failure, context="Audit write")
