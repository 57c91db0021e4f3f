"""Tests for the input pipeline: echo, modes, draining and cancellation."""

import asyncio
import io
import json

import pytest
from aioresponses import aioresponses
from yarl import URL

from discord_pipe.config_loader import PipeConfig
from discord_pipe.delivery import WebhookSender
from discord_pipe.metrics import PipeMetrics
from discord_pipe.pipeline import Pipeline, PipelineCancelled, PipelineState
from discord_pipe.rate_limit import RateLimiter
from discord_pipe.splitter import MAX_MESSAGE_LENGTH

WEBHOOK = "https://discord.test/api/webhooks/1/token"


class FakeSender:
    """Sender stub that records messages and tracks completion."""

    def __init__(self, delay: float = 0.0, on_send=None):
        self.delay = delay
        self.on_send = on_send
        self.sent: list[str] = []
        self.started = 0
        self.completed = 0

    async def send_with_retry(self, content: str) -> bool:
        self.started += 1
        if self.on_send:
            self.on_send(content)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(content)
        self.completed += 1
        return True


class CancellingStream:
    """Line source that fires the cancel event after ``after`` lines."""

    def __init__(self, lines, after, loop, event):
        self._lines = list(lines)
        self._after = after
        self._loop = loop
        self._event = event
        self.reads = 0

    def readline(self):
        if not self._lines:
            return ""
        self.reads += 1
        line = self._lines.pop(0)
        if self.reads == self._after:
            self._loop.call_soon_threadsafe(self._event.set)
        return line


class BrokenStream:
    def __init__(self):
        self.calls = 0

    def readline(self):
        self.calls += 1
        if self.calls == 1:
            return "first\n"
        raise OSError("input/output error")


def make_pipeline(one_line=False, webhook_url=WEBHOOK, sender=None):
    config = PipeConfig(webhook_url=webhook_url, one_line=one_line)
    sender = sender or FakeSender()
    limiter = RateLimiter(interval=0.01)
    return Pipeline(config, sender=sender, rate_limiter=limiter), sender


@pytest.mark.asyncio
async def test_batch_mode_sends_one_chunk_and_echoes():
    pipeline, sender = make_pipeline()
    out = io.StringIO()

    await pipeline.run(io.StringIO("hello\nworld\n"), out)

    assert out.getvalue() == "hello\nworld\n"
    assert sender.sent == ["hello\nworld\n"]
    assert pipeline.state is PipelineState.CLOSED
    assert pipeline.rate_limiter.closed


@pytest.mark.asyncio
async def test_line_mode_dispatches_each_line():
    pipeline, sender = make_pipeline(one_line=True)
    out = io.StringIO()

    await pipeline.run(io.StringIO("a\nb\nc\n"), out)

    assert out.getvalue() == "a\nb\nc\n"
    assert sorted(sender.sent) == ["a", "b", "c"]
    assert pipeline.dispatched == 3


@pytest.mark.asyncio
async def test_last_line_without_newline_is_echoed_with_one():
    pipeline, sender = make_pipeline()
    out = io.StringIO()

    await pipeline.run(io.StringIO("one\ntwo"), out)

    assert out.getvalue() == "one\ntwo\n"
    assert sender.sent == ["one\ntwo\n"]


@pytest.mark.asyncio
async def test_crlf_terminators_are_stripped():
    pipeline, sender = make_pipeline(one_line=True)
    out = io.StringIO()

    await pipeline.run(io.StringIO("dos\r\nline\r\n"), out)

    assert out.getvalue() == "dos\nline\n"
    assert sorted(sender.sent) == ["dos", "line"]


@pytest.mark.asyncio
@pytest.mark.parametrize("one_line", [False, True])
async def test_without_webhook_only_echoes(one_line):
    pipeline, sender = make_pipeline(one_line=one_line, webhook_url=None)
    out = io.StringIO()

    await pipeline.run(io.StringIO("x\ny\n"), out)

    assert out.getvalue() == "x\ny\n"
    assert sender.sent == []
    assert pipeline.dispatched == 0


@pytest.mark.asyncio
async def test_batch_mode_splits_long_input():
    line = "z" * 99 + "\n"
    text = line * 50
    pipeline, sender = make_pipeline()

    await pipeline.run(io.StringIO(text), io.StringIO())

    assert pipeline.dispatched == len(sender.sent) == 3
    assert all(len(chunk) <= MAX_MESSAGE_LENGTH for chunk in sender.sent)
    assert sorted(sender.sent, key=len, reverse=True)[0] == line * 20
    assert sum(len(chunk) for chunk in sender.sent) == len(text)


@pytest.mark.asyncio
async def test_empty_input_in_batch_mode_dispatches_empty_chunk():
    pipeline, sender = make_pipeline()

    await pipeline.run(io.StringIO(""), io.StringIO())

    assert sender.sent == [""]


@pytest.mark.asyncio
async def test_run_waits_for_outstanding_deliveries():
    sender = FakeSender(delay=0.05)
    pipeline, _ = make_pipeline(one_line=True, sender=sender)

    await pipeline.run(io.StringIO("1\n2\n3\n4\n"), io.StringIO())

    assert sender.started == sender.completed == 4
    assert pipeline.outstanding == 0


@pytest.mark.asyncio
async def test_cancel_before_start_reads_nothing():
    pipeline, sender = make_pipeline()
    stream = io.StringIO("never\n")
    event = asyncio.Event()
    event.set()
    out = io.StringIO()

    with pytest.raises(PipelineCancelled):
        await pipeline.run(stream, out, event)

    assert out.getvalue() == ""
    assert stream.tell() == 0
    assert pipeline.state is PipelineState.CANCELLED
    assert pipeline.rate_limiter.closed


@pytest.mark.asyncio
async def test_cancel_mid_input_in_batch_mode_flushes_buffer():
    loop = asyncio.get_running_loop()
    event = asyncio.Event()
    stream = CancellingStream(["l1\n", "l2\n", "l3\n", "l4\n"], after=3, loop=loop, event=event)
    pipeline, sender = make_pipeline()
    out = io.StringIO()

    with pytest.raises(PipelineCancelled):
        await pipeline.run(stream, out, event)

    assert stream.reads == 3
    assert out.getvalue() == "l1\nl2\n"
    assert sender.sent == ["l1\nl2\n"]


@pytest.mark.asyncio
async def test_line_read_after_signal_is_dropped():
    loop = asyncio.get_running_loop()
    event = asyncio.Event()
    stream = CancellingStream(["before\n", "after-signal\n", "later\n"], after=2, loop=loop, event=event)
    pipeline, sender = make_pipeline(one_line=True)
    out = io.StringIO()

    with pytest.raises(PipelineCancelled):
        await pipeline.run(stream, out, event)

    assert stream.reads == 2
    assert out.getvalue() == "before\n"
    assert sender.sent == ["before"]


@pytest.mark.asyncio
async def test_cancel_mid_input_drains_in_flight_deliveries():
    event = asyncio.Event()

    def stop_on_marker(content):
        if content == "stop":
            event.set()

    sender = FakeSender(delay=0.05, on_send=stop_on_marker)
    pipeline, _ = make_pipeline(one_line=True, sender=sender)
    lines = "".join(f"{word}\n" for word in ["a", "stop", "b", "c", "d", "e"])
    out = io.StringIO()

    with pytest.raises(PipelineCancelled):
        await pipeline.run(io.StringIO(lines), out, event)

    echoed = out.getvalue().splitlines()
    assert "e" not in echoed
    # everything dispatched before the interrupt finished before run returned
    assert sender.started == sender.completed == pipeline.dispatched
    assert sorted(sender.sent) == sorted(echoed)
    assert pipeline.outstanding == 0


@pytest.mark.asyncio
async def test_crashing_delivery_does_not_abort_run():
    class ExplodingSender(FakeSender):
        async def send_with_retry(self, content):
            if content == "boom":
                raise RuntimeError("unexpected")
            return await super().send_with_retry(content)

    sender = ExplodingSender()
    pipeline, _ = make_pipeline(one_line=True, sender=sender)

    await pipeline.run(io.StringIO("ok\nboom\nfine\n"), io.StringIO())

    assert sorted(sender.sent) == ["fine", "ok"]
    assert pipeline.state is PipelineState.CLOSED


@pytest.mark.asyncio
async def test_read_error_propagates_after_draining():
    sender = FakeSender(delay=0.02)
    pipeline, _ = make_pipeline(one_line=True, sender=sender)

    with pytest.raises(OSError):
        await pipeline.run(BrokenStream(), io.StringIO())

    assert sender.completed == 1
    assert pipeline.rate_limiter.closed


def test_report_metrics_returns_snapshot():
    metrics = PipeMetrics()
    metrics.inc_sent(10)
    metrics.inc_error()
    pipeline = Pipeline(PipeConfig(), metrics=metrics)

    stats = pipeline.report_metrics()

    assert stats.messages_sent == 1
    assert stats.errors == 1
    assert stats.bytes_sent == 10


@pytest.mark.asyncio
async def test_end_to_end_single_post():
    config = PipeConfig(webhook_url=WEBHOOK)
    pipeline = Pipeline(config)
    out = io.StringIO()

    with aioresponses() as m:
        m.post(WEBHOOK, status=204)
        await pipeline.run(io.StringIO("hello\nworld\n"), out)

        requests = m.requests[("POST", URL(WEBHOOK))]
        assert len(requests) == 1
        assert json.loads(requests[0].kwargs["data"]) == {"content": "hello\nworld\n"}

    assert out.getvalue() == "hello\nworld\n"
    assert pipeline.metrics.get_stats() == (1, 0, len("hello\nworld\n"))
    assert pipeline.state is PipelineState.CLOSED


@pytest.mark.asyncio
async def test_end_to_end_line_mode_strips_colours():
    config = PipeConfig(webhook_url=WEBHOOK, one_line=True)
    pipeline = Pipeline(config)

    with aioresponses() as m:
        m.post(WEBHOOK, status=200, repeat=True)
        await pipeline.run(io.StringIO("\x1b[32mgreen\x1b[0m\nplain\n"), io.StringIO())

        bodies = sorted(
            json.loads(r.kwargs["data"])["content"] for r in m.requests[("POST", URL(WEBHOOK))]
        )

    assert bodies == ["green", "plain"]
    assert pipeline.metrics.get_stats().messages_sent == 2


@pytest.mark.asyncio
async def test_undecodable_input_is_echoed_verbatim_and_sent():
    raw = b"ok line\ncaf\xe9 latin1\nafter\n"
    stream = io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8", errors="surrogateescape")
    out_bytes = io.BytesIO()
    out = io.TextIOWrapper(out_bytes, encoding="utf-8", errors="surrogateescape")
    pipeline = Pipeline(PipeConfig(webhook_url=WEBHOOK))

    with aioresponses() as m:
        m.post(WEBHOOK, status=204)
        await pipeline.run(stream, out)

        requests = m.requests[("POST", URL(WEBHOOK))]
        assert json.loads(requests[0].kwargs["data"]) == {"content": "ok line\ncaf\ufffd latin1\nafter\n"}

    assert out_bytes.getvalue() == raw
    assert pipeline.metrics.get_stats() == (1, 0, len(raw))


def test_rate_limiter_must_match_sender():
    sender = WebhookSender(WEBHOOK, session=None, rate_limiter=RateLimiter())

    with pytest.raises(ValueError, match="rate_limiter"):
        Pipeline(PipeConfig(webhook_url=WEBHOOK), sender=sender, rate_limiter=RateLimiter())


def test_components_are_taken_from_sender():
    limiter = RateLimiter()
    metrics = PipeMetrics()
    sender = WebhookSender(WEBHOOK, session=None, rate_limiter=limiter, metrics=metrics)

    pipeline = Pipeline(PipeConfig(webhook_url=WEBHOOK), sender=sender, rate_limiter=limiter)

    assert pipeline.rate_limiter is limiter
    assert pipeline.metrics is metrics
