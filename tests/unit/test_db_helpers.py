"""
Tests for database retry handling.
"""

from unittest.mock import AsyncMock, patch

import pytest

from app.db.helpers import DatabaseError, with_db_retry


@pytest.mark.asyncio
async def test_recoverable_error_retried_until_success():
    attempts = AsyncMock(
        side_effect=[DatabaseError("timeout", recoverable=True), {"id": "conn-1"}]
    )

    @with_db_retry(max_retries=3, base_delay=0)
    async def load():
        return await attempts()

    with patch("app.db.helpers.asyncio.sleep", AsyncMock()) as sleep:
        assert await load() == {"id": "conn-1"}

    assert attempts.await_count == 2
    sleep.assert_awaited_once_with(0)


@pytest.mark.asyncio
async def test_non_recoverable_error_not_retried():
    attempts = AsyncMock(side_effect=DatabaseError("bad query", recoverable=False))

    @with_db_retry(max_retries=3, base_delay=0)
    async def load():
        return await attempts()

    with pytest.raises(DatabaseError):
        await load()

    assert attempts.await_count == 1


@pytest.mark.asyncio
async def test_retries_exhausted():
    attempts = AsyncMock(side_effect=DatabaseError("timeout", recoverable=True))

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def load():
        return await attempts()

    with patch("app.db.helpers.asyncio.sleep", AsyncMock()) as sleep:
        with pytest.raises(DatabaseError):
            await load()

    assert attempts.await_count == 3
    assert [call.args[0] for call in sleep.await_args_list] == [0.1, 0.2]


@pytest.mark.asyncio
async def test_other_exceptions_propagate_untouched():
    @with_db_retry(max_retries=3, base_delay=0)
    async def load():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await load()
