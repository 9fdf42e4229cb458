from __future__ import annotations

import pytest

from services.verification.errors import NetworkError, UnauthorizedError
from services.verification.models import FileStatus
from services.verification.paginator import VerificationQueuePaginator

from conftest import make_candidate


def _seed(backend, n_reports: int = 5, n_files: int = 7) -> None:
    backend.queue["B1"] = [make_candidate(f"r{i}") for i in range(n_reports)]
    backend.files["B1"] = [FileStatus(id=f"f{i}", filename=f"f{i}.pdf", status="completed") for i in range(n_files)]


@pytest.mark.asyncio
async def test_cursors_are_independent(backend):
    _seed(backend)
    pg = VerificationQueuePaginator(backend, "B1", queue_per_page=2, files_per_page=3)
    await pg.fetch_queue()
    await pg.fetch_files()

    await pg.next_files_page()
    assert pg.files_cursor.current_page == 2
    assert pg.queue_cursor.current_page == 1

    await pg.goto_queue_page(3)
    assert pg.queue_cursor.current_page == 3
    assert pg.files_cursor.current_page == 2
    assert [c.id for c in pg.queue_items] == ["r4"]
    assert pg.queue_cursor.last_page == 3
    assert pg.files_cursor.last_page == 3


@pytest.mark.asyncio
async def test_page_requests_are_clamped(backend):
    _seed(backend, n_reports=3)
    pg = VerificationQueuePaginator(backend, "B1", queue_per_page=2)
    await pg.fetch_queue()
    await pg.prev_queue_page()
    assert pg.queue_cursor.current_page == 1
    await pg.goto_queue_page(99)
    assert pg.queue_cursor.current_page == 2
    assert not pg.queue_cursor.has_next


@pytest.mark.asyncio
async def test_empty_queue_is_not_an_error(backend):
    pg = VerificationQueuePaginator(backend, "B1")
    page = await pg.fetch_queue()
    assert page is not None and page.items == ()
    assert pg.queue_error is None
    assert not pg.can_advance
    assert pg.first_candidate() is None


@pytest.mark.asyncio
async def test_listeners_see_each_successful_queue_fetch(backend):
    _seed(backend, n_reports=1)
    seen = []

    async def listener(page):
        seen.append([c.id for c in page.items])

    pg = VerificationQueuePaginator(backend, "B1")
    pg.add_queue_listener(listener)
    await pg.fetch_queue()
    await pg.fetch_files()
    assert seen == [["r0"]]


@pytest.mark.asyncio
async def test_fetch_error_keeps_stale_items(backend):
    _seed(backend, n_reports=2)
    pg = VerificationQueuePaginator(backend, "B1")
    await pg.fetch_queue()

    backend.fail["get_verification_queue"] = NetworkError("down")
    assert await pg.fetch_queue() is None
    assert pg.queue_error == "down"
    assert [c.id for c in pg.queue_items] == ["r0", "r1"]

    del backend.fail["get_verification_queue"]
    await pg.fetch_queue()
    assert pg.queue_error is None


@pytest.mark.asyncio
async def test_unauthorized_propagates(backend):
    backend.fail["get_batch_files"] = UnauthorizedError()
    pg = VerificationQueuePaginator(backend, "B1")
    with pytest.raises(UnauthorizedError):
        await pg.fetch_files()
    assert pg.files_error
