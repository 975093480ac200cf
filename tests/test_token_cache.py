import asyncio
import gc
from unittest.mock import AsyncMock

import pytest

from wx_gateway.config import parse_gateway_config
from wx_gateway.errors import UpstreamError
from wx_gateway.registry import build_registry
from wx_gateway.routes.api import with_token
from wx_gateway.store import TokenStore
from wx_gateway.token_cache import AccessToken, AccessTokenCache

from conftest import SAMPLE_CONF


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestFreshToken:
    @pytest.mark.asyncio
    async def test_fresh_token_makes_no_call(self):
        fetcher = AsyncMock(return_value=("tok-1", 7200))
        clock = FakeClock()
        cache = AccessTokenCache("a", "appa", "sec", fetcher, clock=clock)

        assert await cache.get_valid_token() == "tok-1"
        clock.now += 3600
        assert await cache.get_valid_token() == "tok-1"
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_refreshes_inside_safety_margin(self):
        fetcher = AsyncMock(side_effect=[("tok-1", 7200), ("tok-2", 7200)])
        clock = FakeClock()
        cache = AccessTokenCache("a", "appa", "sec", fetcher, safety_margin=60, clock=clock)

        await cache.get_valid_token()
        clock.now += 7200 - 30
        assert await cache.get_valid_token() == "tok-2"
        assert fetcher.await_count == 2
        assert cache.token.expires_at == clock.now + 7200

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        fetcher = AsyncMock(side_effect=[("tok-1", 7200), ("tok-2", 7200)])
        cache = AccessTokenCache("a", "appa", "sec", fetcher)

        token = await cache.get_valid_token()
        assert cache.invalidate(token)
        assert cache.token is None
        assert await cache.get_valid_token() == "tok-2"

    @pytest.mark.asyncio
    async def test_late_rejection_of_old_token_keeps_newer_one(self):
        fetcher = AsyncMock(side_effect=[("tok-1", 7200), ("tok-2", 7200)])
        cache = AccessTokenCache("a", "appa", "sec", fetcher)

        old = await cache.get_valid_token()
        cache.invalidate(old)
        assert await cache.get_valid_token() == "tok-2"

        assert not cache.invalidate(old)
        assert cache.token.value == "tok-2"
        assert await cache.get_valid_token() == "tok-2"
        assert fetcher.await_count == 2

    @pytest.mark.asyncio
    async def test_short_ttl_still_leaves_token_usable(self):
        fetcher = AsyncMock(side_effect=[("tok-1", 60), ("tok-2", 60)])
        clock = FakeClock()
        cache = AccessTokenCache("a", "appa", "sec", fetcher, safety_margin=60, clock=clock)

        await cache.get_valid_token()
        clock.now += 10
        assert await cache.get_valid_token() == "tok-1"
        assert fetcher.await_count == 1

        clock.now += 21
        assert await cache.get_valid_token() == "tok-2"


class TestSingleRefresher:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        calls = 0

        async def fetcher(app_id, secret):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return f"tok-{calls}", 7200

        cache = AccessTokenCache("a", "appa", "sec", fetcher)
        results = await asyncio.gather(*(cache.get_valid_token() for _ in range(25)))

        assert calls == 1
        assert set(results) == {"tok-1"}
        assert not cache.refreshing

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_retried_later(self):
        calls = 0

        async def fetcher(app_id, secret):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            if calls == 1:
                raise UpstreamError("errcode 40013: invalid appid", errcode=40013)
            return "tok-2", 7200

        cache = AccessTokenCache("a", "appa", "sec", fetcher)
        results = await asyncio.gather(
            *(cache.get_valid_token() for _ in range(5)), return_exceptions=True,
        )

        assert calls == 1
        assert all(isinstance(r, UpstreamError) for r in results)
        assert not cache.refreshing

        assert await cache.get_valid_token() == "tok-2"
        assert calls == 2

    @pytest.mark.asyncio
    async def test_stale_token_is_not_served_after_failed_refresh(self):
        fetcher = AsyncMock(side_effect=[("tok-1", 7200), UpstreamError("HTTP 500")])
        clock = FakeClock()
        cache = AccessTokenCache("a", "appa", "sec", fetcher, clock=clock)

        await cache.get_valid_token()
        clock.now += 7200
        with pytest.raises(UpstreamError):
            await cache.get_valid_token()
        assert cache.token is None

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_is_wrapped(self):
        fetcher = AsyncMock(side_effect=RuntimeError("socket closed"))
        cache = AccessTokenCache("a", "appa", "sec", fetcher)

        with pytest.raises(UpstreamError) as exc_info:
            await cache.get_valid_token()
        assert "socket closed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self):
        started = asyncio.Event()

        async def fetcher(app_id, secret):
            started.set()
            await asyncio.sleep(0.05)
            return "tok-1", 7200

        cache = AccessTokenCache("a", "appa", "sec", fetcher)
        first = asyncio.ensure_future(cache.get_valid_token())
        await started.wait()
        second = asyncio.ensure_future(cache.get_valid_token())
        await asyncio.sleep(0)
        first.cancel()

        assert await second == "tok-1"

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once_for_concurrent_callers(self):
        calls = 0

        async def fetcher(app_id, secret):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return f"tok-{calls}", 7200

        clock = FakeClock()
        cache = AccessTokenCache("a", "appa", "sec", fetcher, clock=clock)
        assert await cache.get_valid_token() == "tok-1"

        clock.now += 7200 + 1
        results = await asyncio.gather(*(cache.get_valid_token() for _ in range(25)))

        assert calls == 2
        assert set(results) == {"tok-2"}

    @pytest.mark.asyncio
    async def test_failed_refresh_with_no_waiters_left_is_not_reported_lost(self):
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            started = asyncio.Event()

            async def fetcher(app_id, secret):
                started.set()
                await asyncio.sleep(0.01)
                raise UpstreamError("HTTP 500")

            cache = AccessTokenCache("a", "appa", "sec", fetcher)
            waiter = asyncio.ensure_future(cache.get_valid_token())
            await started.wait()
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

            while cache.refreshing:
                await asyncio.sleep(0.005)
            await asyncio.sleep(0)
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert not [c for c in reported if "never retrieved" in c.get("message", "")]

    @pytest.mark.asyncio
    async def test_rejections_in_flight_cost_a_single_refresh(self, fake_wx, wx_client):
        registry = build_registry(parse_gateway_config(SAMPLE_CONF), wx_client)
        entry = registry.resolve("a")
        gates = [asyncio.Event() for _ in range(3)]
        seen = []

        async def call(token):
            seen.append(token)
            if token == "token-appa-1":
                await gates[len(seen) - 1].wait()
                raise UpstreamError("errcode 40001: invalid credential", errcode=40001)
            return "ok"

        in_flight = [asyncio.ensure_future(with_token(entry, call)) for _ in range(3)]
        while len(seen) < 3:
            await asyncio.sleep(0.005)

        for gate, task in zip(gates, in_flight):
            gate.set()
            with pytest.raises(UpstreamError):
                await task
            assert await with_token(entry, call) == "ok"

        assert fake_wx.token_calls["appa"] == 2


class TestServiceIsolation:
    @pytest.mark.asyncio
    async def test_failure_of_one_service_leaves_other_untouched(self, fake_wx, wx_client):
        registry = build_registry(parse_gateway_config(SAMPLE_CONF), wx_client)
        fake_wx.fail_apps.add("appa")

        with pytest.raises(UpstreamError):
            await registry.resolve("a").token_cache.get_valid_token()

        token_b = await registry.resolve("b").token_cache.get_valid_token()
        assert token_b == "token-appb-1"
        assert registry.resolve("a").token_cache.token is None
        assert fake_wx.token_calls == {"appa": 1, "appb": 1}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_refreshed_token_survives_restart(self, tmp_path):
        store = TokenStore(tmp_path)
        fetcher = AsyncMock(return_value=("tok-1", 7200))
        cache = AccessTokenCache("a", "appa", "sec", fetcher, token_store=store)
        await cache.get_valid_token()

        other = AsyncMock()
        restarted = AccessTokenCache("a", "appa", "sec", other, token_store=store)
        assert await restarted.get_valid_token() == "tok-1"
        other.assert_not_awaited()

    def test_expired_file_is_ignored(self, tmp_path):
        store = TokenStore(tmp_path)
        store.save("appa", AccessToken("old", 10.0))
        assert store.load("appa") is None

    def test_corrupt_file_is_ignored(self, tmp_path):
        (tmp_path / "appa.json").write_text("{not json", encoding="utf-8")
        assert TokenStore(tmp_path).load("appa") is None

    def test_missing_file(self, tmp_path):
        assert TokenStore(tmp_path / "nowhere").load("appa") is None
