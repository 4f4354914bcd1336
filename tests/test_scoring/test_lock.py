"""Tests for the cross-process scoring lock."""

from unittest.mock import AsyncMock

import pytest

from src.scoring.lock import ScoringLock


class TestScoringLock:
    """Tests for ScoringLock."""

    @pytest.mark.asyncio
    async def test_acquire_sets_key_with_nx_and_ttl(self, mock_redis):
        lock = ScoringLock(mock_redis, key="scoring:lock", ttl_seconds=120)

        assert await lock.acquire() is True

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "scoring:lock"
        assert kwargs == {"nx": True, "ex": 120}

    @pytest.mark.asyncio
    async def test_release_deletes_only_own_token(self, mock_redis):
        lock = ScoringLock(mock_redis)
        await lock.acquire()
        token = mock_redis.set.call_args.args[1]

        await lock.release()

        _, numkeys, key, released_token = mock_redis.eval.call_args.args
        assert numkeys == 1
        assert key == "scoring:lock"
        assert released_token == token

    @pytest.mark.asyncio
    async def test_held_elsewhere(self, mock_redis):
        mock_redis.set.return_value = None
        lock = ScoringLock(mock_redis)

        async with lock.hold() as acquired:
            assert acquired is False

        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_twice_is_noop(self, mock_redis):
        lock = ScoringLock(mock_redis)
        await lock.acquire()
        await lock.release()
        await lock.release()
        assert mock_redis.eval.await_count == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_local_lock_when_redis_down(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("refused")
        lock = ScoringLock(mock_redis)

        assert await lock.acquire() is True
        # Same process cannot take it twice
        assert await lock.acquire() is False

        await lock.release()
        assert await lock.acquire() is True
        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_redis_uses_local_lock(self):
        lock = ScoringLock(None)
        async with lock.hold() as first:
            assert first is True
            async with lock.hold() as second:
                assert second is False
        async with lock.hold() as again:
            assert again is True

    @pytest.mark.asyncio
    async def test_release_failure_is_not_raised(self, mock_redis):
        mock_redis.eval = AsyncMock(side_effect=ConnectionError("gone"))
        lock = ScoringLock(mock_redis)

        async with lock.hold() as acquired:
            assert acquired is True
