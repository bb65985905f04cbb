"""Per-document debounced write queue in front of the active backend.

A burst of edits to one document turns into a single physical write of the
last state. Every write is followed by a verification read, and a failure
stays recorded until a later write of the same document succeeds.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional

from notestore.config import config
from notestore.exceptions import VerificationFailedError
from notestore.models.schema import Document, EntityKind, coerce_entity, utc_now
from notestore.observability import timed_operation
from notestore.storage.base import StorageBackend, call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class _PendingWrite:
    payload: Document
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


@dataclass
class WriteOutcome:
    """How one physical write of a document settled.

    ``document`` is the stored copy on success and the payload that could
    not be written on failure.
    """

    entity_id: str
    success: bool
    document: Optional[Document] = None
    error: Optional[BaseException] = None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


@dataclass
class SettlementReport:
    """Result of ``flush_all``: every write it waited for, plus older failures."""

    outcomes: List[WriteOutcome] = field(default_factory=list)
    earlier_failures: List[WriteOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[WriteOutcome]:
        return [o for o in self.outcomes if not o.success] + list(self.earlier_failures)

    @property
    def written_ids(self) -> List[str]:
        return [o.entity_id for o in self.outcomes if o.success]

    @property
    def ok(self) -> bool:
        return not self.failures


def _mark_retrieved(future: asyncio.Future) -> None:
    # Failures stay visible through failed_writes(); nobody has to await the future
    if future.done() and not future.cancelled():
        future.exception()


class WriteCoalescer:
    """Debounce queue keyed by document id.

    Timers are ``loop.call_later`` callbacks on the running loop, and the
    pending map is only touched from synchronous code, so no locks are
    needed. Writes of one id are applied in the order their timers fire: a
    fired write waits for any earlier in-flight write of the same id before
    calling the backend. Distinct ids are written independently.
    """

    def __init__(
        self,
        backend: StorageBackend,
        debounce_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the coalescer.

        Args:
            backend: Backend written to; may be replaced between writes.
            debounce_seconds: Debounce window (defaults to the configured value).
            timeout: Bound for each backend call in seconds (defaults to the
                configured value).
        """
        self.backend = backend
        self.debounce_seconds = (
            config.debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.timeout = config.backend_timeout if timeout is None else timeout
        self._pending: Dict[str, _PendingWrite] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, WriteOutcome] = {}

    # --- queue ---

    def enqueue(self, doc) -> asyncio.Future:
        """Schedule a debounced write of ``doc``.

        Enqueues of the same id within the window replace the payload and
        share one future, which settles with the write of the last payload.

        Raises:
            InvalidEntityError: Synchronously, before any I/O, when the
                document has no usable id.
        """
        doc = coerce_entity(EntityKind.DOCUMENTS, doc)
        loop = asyncio.get_running_loop()

        entry = self._pending.get(doc.id)
        if entry is None:
            entry = _PendingWrite(payload=doc, future=loop.create_future())
            self._pending[doc.id] = entry
        else:
            entry.timer.cancel()
            entry.payload = doc

        entry.timer = loop.call_later(self.debounce_seconds, self._fire, doc.id)
        return entry.future

    def _fire(self, entity_id: str) -> None:
        entry = self._pending.pop(entity_id, None)
        if entry is None:
            return
        logger.debug(f"Debounce window elapsed for {entity_id}")
        self._launch(entry.payload, entry.future)

    def _launch(self, doc: Document, future: asyncio.Future) -> asyncio.Task:
        previous = self._in_flight.get(doc.id)
        task = asyncio.ensure_future(self._write_and_verify(doc, previous))
        self._in_flight[doc.id] = task
        task.add_done_callback(partial(self._settle, doc, future))
        return task

    async def _write_and_verify(
        self, doc: Document, previous: Optional[asyncio.Task]
    ) -> Document:
        if previous is not None and not previous.done():
            await asyncio.gather(previous, return_exceptions=True)

        backend = self.backend
        stamped = doc.model_copy(update={"updated_at": utc_now()})

        with timed_operation("write_document", doc_id=doc.id, backend=backend.name):
            await call_with_timeout(
                backend.write_document(stamped), self.timeout, "write_document", doc.id
            )

        with timed_operation("verify_document", doc_id=doc.id, backend=backend.name):
            stored = await call_with_timeout(
                backend.read_one(EntityKind.DOCUMENTS, doc.id),
                self.timeout,
                "read_one",
                doc.id,
            )
            if stored is None:
                raise VerificationFailedError(doc.id)
            if stored.to_record() != stamped.to_record():
                raise VerificationFailedError(doc.id, "read-back differs from written payload")

        logger.debug(f"Wrote and verified document {doc.id} via {backend.name}")
        return stamped

    def _settle(self, doc: Document, future: asyncio.Future, task: asyncio.Task) -> None:
        entity_id = doc.id
        if self._in_flight.get(entity_id) is task:
            del self._in_flight[entity_id]

        if task.cancelled():
            error: BaseException = asyncio.CancelledError()
        else:
            error = task.exception()

        if error is None:
            self._failures.pop(entity_id, None)
            if not future.done():
                future.set_result(task.result())
            return

        logger.error(f"Write of document {entity_id} failed: {error!r}")
        # The unwritten payload is kept so the caller can retry it with write_now
        self._failures[entity_id] = WriteOutcome(entity_id, False, document=doc, error=error)
        if future.done():
            return
        if task.cancelled():
            future.cancel()
        else:
            future.set_exception(error)
            _mark_retrieved(future)

    # --- explicit durability points ---

    async def write_now(self, doc) -> Document:
        """Write ``doc`` immediately, superseding any pending write of its id.

        A success clears a recorded failure for the id.

        Raises:
            InvalidEntityError: If the document has no usable id.
            QuotaExceededError, VerificationFailedError, BackendTimeoutError,
            StorageError: If the write fails.
        """
        doc = coerce_entity(EntityKind.DOCUMENTS, doc)
        entry = self._pending.pop(doc.id, None)
        if entry is not None:
            entry.timer.cancel()
            future = entry.future
        else:
            future = asyncio.get_running_loop().create_future()
        self._launch(doc, future)
        return await future

    async def flush_all(self) -> SettlementReport:
        """Write every pending document now and wait for all in-flight writes.

        Never short-circuits: every write is awaited and reported. Failures
        recorded before this call whose ids were not written again are listed
        in ``earlier_failures``.
        """
        earlier = set(self._failures)

        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            self._launch(entry.payload, entry.future)

        tasks = dict(self._in_flight)
        if not tasks and not earlier:
            return SettlementReport()

        results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        report = SettlementReport()
        for entity_id, result in zip(tasks, results):
            if isinstance(result, BaseException):
                report.outcomes.append(
                    self._failures.get(entity_id) or WriteOutcome(entity_id, False, error=result)
                )
            else:
                report.outcomes.append(WriteOutcome(entity_id, True, document=result))

        report.earlier_failures = [
            self._failures[entity_id]
            for entity_id in sorted(earlier)
            if entity_id in self._failures and entity_id not in tasks
        ]
        if report.failures:
            logger.warning(
                f"flush_all settled {len(report.outcomes)} write(s) with "
                f"{len(report.failures)} failure(s)"
            )
        else:
            logger.debug(f"flush_all settled {len(report.outcomes)} write(s)")
        return report

    def discard(self, entity_id: str) -> None:
        """Drop a pending write without performing it (used before a permanent delete)."""
        entry = self._pending.pop(entity_id, None)
        if entry is not None:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.cancel()
        self.forget_failure(entity_id)

    def forget_failure(self, entity_id: str) -> None:
        """Stop reporting a failed write, e.g. once its document is deleted."""
        self._failures.pop(entity_id, None)

    async def wait_in_flight(self, entity_id: str) -> None:
        """Wait until no write of ``entity_id`` is running."""
        while entity_id in self._in_flight:
            await asyncio.gather(self._in_flight[entity_id], return_exceptions=True)

    # --- introspection ---

    def has_pending(self, entity_id: str) -> bool:
        """True while a write of ``entity_id`` is debounced or running."""
        return entity_id in self._pending or entity_id in self._in_flight

    def pending_payload(self, entity_id: str) -> Optional[Document]:
        """The latest not-yet-written state of a document, if any."""
        entry = self._pending.get(entity_id)
        return entry.payload if entry is not None else None

    def pending_ids(self) -> List[str]:
        return sorted(set(self._pending) | set(self._in_flight))

    def failed_writes(self) -> List[WriteOutcome]:
        """Failed writes not yet superseded by a successful one."""
        return [self._failures[k] for k in sorted(self._failures)]
