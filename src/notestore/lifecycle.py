"""Hooks the UI shell calls on visibility changes and teardown."""

import logging
from typing import Optional

from notestore.services.write_coalescer import SettlementReport
from notestore.store import NoteStore

logger = logging.getLogger(__name__)


class LifecycleGuard:
    """Flushes the store when the window hides or closes.

    The shell asks ``should_warn_before_close`` before navigating away; it
    is True while a write is pending or running, or after a write failed
    and has not been retried successfully.
    """

    def __init__(self, store: NoteStore):
        self.store = store
        self.last_report: Optional[SettlementReport] = None

    async def on_visibility_change(self, hidden: bool) -> Optional[SettlementReport]:
        if not hidden:
            return None
        logger.debug("Window hidden; flushing pending writes")
        return await self._flush()

    async def on_teardown(self) -> SettlementReport:
        logger.info("Teardown; flushing pending writes")
        return await self._flush()

    async def _flush(self) -> SettlementReport:
        report = await self.store.flush_all()
        self.last_report = report
        for outcome in report.failures:
            logger.warning(
                f"Unsaved document {outcome.entity_id}: {outcome.error_kind}"
            )
        return report

    def should_warn_before_close(self, doc_id: Optional[str] = None) -> bool:
        failed = {o.entity_id for o in self.store.failed_writes()}
        if doc_id is not None:
            return self.store.has_pending_write(doc_id) or doc_id in failed
        if failed:
            return True
        coalescer = self.store.coalescer
        return coalescer is not None and bool(coalescer.pending_ids())
