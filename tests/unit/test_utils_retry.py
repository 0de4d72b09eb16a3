"""Tests for issue_pipeline.utils.retry module."""

from unittest.mock import AsyncMock, patch

import pytest

from issue_pipeline.exceptions import CollaboratorFailure, UsageError
from issue_pipeline.utils.retry import async_retry


@pytest.fixture
def no_sleep():
    with patch("issue_pipeline.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_returns_first_success(no_sleep):
    """Test that a successful call is not retried."""
    calls = []

    @async_retry(max_attempts=3)
    async def fetch():
        calls.append(1)
        return "ok"

    assert await fetch() == "ok"
    assert len(calls) == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retries_with_backoff(no_sleep):
    """Test exponential delays between attempts."""
    attempts = []

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(CollaboratorFailure,))
    async def fetch():
        attempts.append(1)
        if len(attempts) < 3:
            raise CollaboratorFailure("flaky", collaborator="tracker")
        return "ok"

    assert await fetch() == "ok"
    assert [c.args[0] for c in no_sleep.await_args_list] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_gives_up(no_sleep):
    """Test that the last error propagates after max_attempts."""

    @async_retry(max_attempts=2, exceptions=(CollaboratorFailure,))
    async def fetch():
        raise CollaboratorFailure("down", collaborator="tracker")

    with pytest.raises(CollaboratorFailure):
        await fetch()
    assert no_sleep.await_count == 1


@pytest.mark.asyncio
async def test_other_errors_not_retried(no_sleep):
    """Test that exceptions outside the list propagate immediately."""
    calls = []

    @async_retry(max_attempts=3, exceptions=(CollaboratorFailure,))
    async def fetch():
        calls.append(1)
        raise UsageError("bad input")

    with pytest.raises(UsageError):
        await fetch()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retry_if_stops_early(no_sleep):
    """Test that a failing predicate propagates the error without more attempts."""
    calls = []

    @async_retry(
        max_attempts=3,
        exceptions=(CollaboratorFailure,),
        retry_if=lambda e: e.status_code is None or e.status_code >= 500,
    )
    async def fetch():
        calls.append(1)
        status = 503 if len(calls) == 1 else 404
        raise CollaboratorFailure("unavailable", collaborator="tracker", status_code=status)

    with pytest.raises(CollaboratorFailure) as exc_info:
        await fetch()

    assert exc_info.value.status_code == 404
    assert len(calls) == 2
    assert no_sleep.await_count == 1
