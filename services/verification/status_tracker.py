# services/verification/status_tracker.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from services.verification.backend import ReviewBackend
from services.verification.errors import ReviewError, UnauthorizedError
from services.verification.models import Batch
from services.verification.paginator import VerificationQueuePaginator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 2.0


def compute_progress(batch: Optional[Batch]) -> int:
    """Percent of reports processed, from the server's aggregate counts."""
    if batch is None or batch.total_reports <= 0:
        return 0
    pct = round(100 * batch.processed_reports / batch.total_reports)
    return max(0, min(100, int(pct)))


class BatchStatusTracker:
    """
    Polls batch status (and the review queue) while the batch is pending or
    processing and auto-refresh is on. Counts shown to the user are always
    the last server response; nothing here adjusts them locally.
    """

    def __init__(
        self,
        backend: ReviewBackend,
        batch_id: str,
        *,
        paginator: Optional[VerificationQueuePaginator] = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        auto_refresh: bool = True,
    ) -> None:
        self.backend = backend
        self.batch_id = batch_id
        self.paginator = paginator
        self.poll_interval_s = float(poll_interval_s)
        self.auto_refresh = auto_refresh

        self.batch: Optional[Batch] = None
        self.error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    # --- derived state ---
    @property
    def progress(self) -> int:
        return compute_progress(self.batch)

    @property
    def failed_count(self) -> int:
        return self.batch.failed_reports if self.batch else 0

    @property
    def is_terminal(self) -> bool:
        return self.batch is not None and not self.batch.is_active

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    # --- fetching ---
    async def refresh(self, *, include_queue: bool = True) -> Optional[Batch]:
        """Manual refresh; allowed in any state."""
        try:
            batch = await self.backend.get_batch_status(self.batch_id)
        except ReviewError as e:
            logger.warning("batch status fetch failed batch=%s: %s", self.batch_id, e)
            self.error = e.user_message
            if isinstance(e, UnauthorizedError):
                raise
            return None

        self.batch = batch
        self.error = None

        if include_queue and self.paginator is not None:
            await self.paginator.fetch_queue()
        return batch

    async def retry_failed(self) -> bool:
        try:
            ack = await self.backend.retry_failed(self.batch_id)
        except ReviewError as e:
            logger.warning("retry of failed files rejected batch=%s: %s", self.batch_id, e)
            self.error = e.user_message
            if isinstance(e, UnauthorizedError):
                raise
            return False

        logger.info("retry requested batch=%s ack=%s", self.batch_id, ack)
        await self.refresh()
        # a retried batch goes back to processing; resume polling
        self.start()
        return True

    # --- polling ---
    def start(self) -> None:
        if not self.auto_refresh or self.is_polling or self.is_terminal:
            return
        logger.debug("polling started batch=%s interval=%.1fs", self.batch_id, self.poll_interval_s)
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("polling stopped batch=%s", self.batch_id)

    async def set_auto_refresh(self, enabled: bool) -> None:
        self.auto_refresh = bool(enabled)
        if self.auto_refresh:
            self.start()
        else:
            await self.stop()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                await self.refresh()
            except UnauthorizedError:
                logger.warning("polling halted, credential rejected batch=%s", self.batch_id)
                return
            if self.is_terminal:
                logger.info(
                    "batch %s reached %s (%d%%, %d failed); polling stopped",
                    self.batch_id,
                    self.batch.status if self.batch else "?",
                    self.progress,
                    self.failed_count,
                )
                return
