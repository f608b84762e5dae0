"""
tests/test_pinger.py
Worker orchestration: counts, warm-up, cloning, cancellation.
Run: pytest tests/test_pinger.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from httpping.models import Config, Measurement
from httpping.pinger import MeasurementStream, Pinger


def fake_client(url="https://example.com/"):
    client = MagicMock()
    client.url = url
    client.do_measure = AsyncMock(return_value=Measurement(status_code=200))
    client.aclose = AsyncMock()
    client.clones = []

    def clone():
        c = fake_client(url)
        client.clones.append(c)
        return c

    client.clone = MagicMock(side_effect=clone)
    return client


async def collect(stream):
    return [m async for m in stream]


# ── counts ────────────────────────────────────────────────────────────────────

class TestCounts:

    @pytest.mark.asyncio
    async def test_workers_times_count(self):
        client = fake_client()
        config = Config(target=client.url, workers=3, count=10, interval=0, disable_keepalive=True)
        results = await collect(Pinger(config, client=client).ping())

        assert len(results) == 30
        assert client.clone.call_count == 3
        for clone in client.clones:
            assert clone.do_measure.await_count == 10
            clone.aclose.assert_awaited_once()
        client.do_measure.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_worker_reuses_client(self):
        client = fake_client()
        config = Config(target=client.url, workers=1, count=123, interval=0, disable_keepalive=True)
        results = await collect(Pinger(config, client=client).ping())

        assert len(results) == 123
        client.clone.assert_not_called()
        # the caller owns the primary client
        client.aclose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_warm_up_probe_is_not_emitted(self):
        client = fake_client()
        config = Config(target=client.url, workers=1, count=4, interval=0)
        results = await collect(Pinger(config, client=client).ping())

        assert len(results) == 4
        assert client.do_measure.await_count == 5

    @pytest.mark.asyncio
    async def test_redirect_discovery_is_not_emitted(self):
        client = fake_client()
        config = Config(target=client.url, count=2, interval=0, disable_keepalive=True, follow_redirects=True)
        results = await collect(Pinger(config, client=client).ping())

        assert len(results) == 2
        assert client.do_measure.await_args_list[0].args == (True,)
        assert all(call.args == (False,) for call in client.do_measure.await_args_list[1:])

    @pytest.mark.asyncio
    async def test_no_sleep_after_last_probe(self, monkeypatch):
        sleeps = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            sleeps.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        client = fake_client()
        config = Config(target=client.url, count=3, interval=2.5, disable_keepalive=True)
        await collect(Pinger(config, client=client).ping())

        assert sleeps == [2.5, 2.5]


# ── stream ────────────────────────────────────────────────────────────────────

class TestStream:

    @pytest.mark.asyncio
    async def test_cancel_ends_iteration(self):
        client = fake_client()
        config = Config(target=client.url, interval=0.01, disable_keepalive=True)  # unbounded count
        stream = Pinger(config, client=client).ping()

        received = 0
        async for _ in stream:
            received += 1
            if received == 3:
                stream.cancel()
        await stream.aclose()
        assert received >= 3

    @pytest.mark.asyncio
    async def test_worker_error_surfaces(self):
        async def producer(queue):
            queue.put_nowait(Measurement(status_code=200))
            raise RuntimeError("boom")

        stream = MeasurementStream(producer)
        first = await stream.__anext__()
        assert first.status_code == 200
        with pytest.raises(RuntimeError, match="boom"):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_pinger_closes_client(self):
        client = fake_client()
        pinger = Pinger(Config(target=client.url), client=client)
        assert pinger.url == client.url
        await pinger.aclose()
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_before_producer_runs(self):
        async def producer(queue):
            queue.put_nowait(Measurement(status_code=200))

        stream = MeasurementStream(producer)
        stream.cancel()
        assert await asyncio.wait_for(collect(stream), 2) == []
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_failing_worker_stops_the_others_before_close(self):
        events = []

        async def explode(_follow):
            raise RuntimeError("boom")

        async def hang(_follow):
            try:
                await asyncio.Event().wait()
            finally:
                events.append("worker stopped")

        def worker_client(do_measure, name):
            c = MagicMock()
            c.do_measure = AsyncMock(side_effect=do_measure)

            async def aclose():
                events.append(f"{name} closed")

            c.aclose = aclose
            return c

        clones = iter([worker_client(hang, "hanging"), worker_client(explode, "failing")])
        client = fake_client()
        client.clone = MagicMock(side_effect=lambda: next(clones))
        config = Config(target=client.url, workers=2, count=1, interval=0, disable_keepalive=True)

        with pytest.raises(RuntimeError, match="boom"):
            await asyncio.wait_for(collect(Pinger(config, client=client).ping()), 2)
        assert events == ["worker stopped", "hanging closed", "failing closed"]
