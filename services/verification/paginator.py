# services/verification/paginator.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional

from services.verification.backend import ReviewBackend
from services.verification.errors import ReviewError, UnauthorizedError
from services.verification.models import FileStatus, Page, ReportCandidate

logger = logging.getLogger(__name__)

QueueListener = Callable[[Page[ReportCandidate]], Awaitable[None]]


@dataclass(frozen=True)
class PageCursor:
    current_page: int = 1
    last_page: int = 1
    per_page: int = 10
    total: int = 0

    def clamp(self, page: int) -> int:
        return max(1, min(int(page), max(1, self.last_page)))

    @property
    def has_next(self) -> bool:
        return self.current_page < self.last_page

    @property
    def has_prev(self) -> bool:
        return self.current_page > 1


class VerificationQueuePaginator:
    """
    Two independently paged views of one batch:
      - queue: reports ready for verification
      - files: raw per-file processing status

    Each view owns its own cursor; moving one never touches the other.
    """

    def __init__(
        self,
        backend: ReviewBackend,
        batch_id: str,
        *,
        queue_per_page: int = 10,
        files_per_page: int = 20,
    ) -> None:
        self.backend = backend
        self.batch_id = batch_id

        self.queue_cursor = PageCursor(per_page=queue_per_page)
        self.files_cursor = PageCursor(per_page=files_per_page)
        self.queue_items: List[ReportCandidate] = []
        self.file_items: List[FileStatus] = []
        self.queue_error: Optional[str] = None
        self.files_error: Optional[str] = None

        self._queue_listeners: List[QueueListener] = []

    def add_queue_listener(self, listener: QueueListener) -> None:
        self._queue_listeners.append(listener)

    @property
    def can_advance(self) -> bool:
        return bool(self.queue_items)

    def first_candidate(self) -> Optional[ReportCandidate]:
        return self.queue_items[0] if self.queue_items else None

    # --- review queue ---
    async def fetch_queue(self, page: Optional[int] = None) -> Optional[Page[ReportCandidate]]:
        target = self.queue_cursor.current_page if page is None else max(1, int(page))
        try:
            result = await self.backend.get_verification_queue(self.batch_id, target, self.queue_cursor.per_page)
        except ReviewError as e:
            logger.warning("verification queue fetch failed batch=%s page=%s: %s", self.batch_id, target, e)
            self.queue_error = e.user_message
            if isinstance(e, UnauthorizedError):
                raise
            return None

        self.queue_items = list(result.items)
        self.queue_cursor = replace(
            self.queue_cursor,
            current_page=result.current_page,
            last_page=max(1, result.last_page),
            total=result.total,
        )
        self.queue_error = None

        for listener in list(self._queue_listeners):
            await listener(result)
        return result

    async def goto_queue_page(self, page: int) -> Optional[Page[ReportCandidate]]:
        return await self.fetch_queue(self.queue_cursor.clamp(page))

    async def next_queue_page(self) -> Optional[Page[ReportCandidate]]:
        return await self.goto_queue_page(self.queue_cursor.current_page + 1)

    async def prev_queue_page(self) -> Optional[Page[ReportCandidate]]:
        return await self.goto_queue_page(self.queue_cursor.current_page - 1)

    # --- file status listing ---
    async def fetch_files(self, page: Optional[int] = None) -> Optional[Page[FileStatus]]:
        target = self.files_cursor.current_page if page is None else max(1, int(page))
        try:
            result = await self.backend.get_batch_files(self.batch_id, target, self.files_cursor.per_page)
        except ReviewError as e:
            logger.warning("file listing fetch failed batch=%s page=%s: %s", self.batch_id, target, e)
            self.files_error = e.user_message
            if isinstance(e, UnauthorizedError):
                raise
            return None

        self.file_items = list(result.items)
        self.files_cursor = replace(
            self.files_cursor,
            current_page=result.current_page,
            last_page=max(1, result.last_page),
            total=result.total,
        )
        self.files_error = None
        return result

    async def goto_files_page(self, page: int) -> Optional[Page[FileStatus]]:
        return await self.fetch_files(self.files_cursor.clamp(page))

    async def next_files_page(self) -> Optional[Page[FileStatus]]:
        return await self.goto_files_page(self.files_cursor.current_page + 1)

    async def prev_files_page(self) -> Optional[Page[FileStatus]]:
        return await self.goto_files_page(self.files_cursor.current_page - 1)
