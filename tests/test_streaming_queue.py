import asyncio

from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.streaming_queue import CancelToken, StreamingQueue
from classroom_engine.chat.tokenizer import tokenize


def test_cancel_after_third_unit_keeps_first_three():
    async def run():
        ml = MessageList()
        q = StreamingQueue(messages=ml, base_delay_ms=0)
        text = " ".join(f"w{i}" for i in range(50))
        units = tokenize(text)
        assert len(units) == 50

        def on_snapshot(snap):
            live = next((m for m in snap if m.id == q.live_id), None)
            if live is not None and len(tokenize(live.text)) == 3 and not q.token.cancelled:
                q.cancel()

        ml.subscribe(on_snapshot)
        q.enqueue(text)
        await q.wait_idle()

        msgs = ml.snapshot()
        assert len(msgs) == 1
        assert msgs[0].text == "".join(units[:3])
        assert msgs[0].role == "assistant"
        assert msgs[0].is_temporary
        assert q.queue_length == 0
        assert not q.is_streaming
        assert q.live_id is None

    asyncio.run(run())


def test_full_drain_and_single_refresh():
    async def run():
        ml = MessageList()
        refreshes = []

        async def on_refresh():
            refreshes.append(1)

        q = StreamingQueue(messages=ml, base_delay_ms=0, refetch_delay_ms=0, on_refresh=on_refresh)
        q.set_status("Agent: Tutor")
        q.enqueue("one two ")
        q.enqueue("three")
        q.request_refresh()
        q.request_refresh()
        assert q.is_streaming or q.queue_length > 0
        await q.wait_idle()
        await asyncio.sleep(0.02)

        assert [m.text for m in ml.snapshot()] == ["one two three"]
        assert q.status_text == ""
        assert refreshes == [1]

    asyncio.run(run())


def test_refresh_when_idle_runs_immediately():
    async def run():
        done = asyncio.Event()

        async def on_refresh():
            done.set()

        q = StreamingQueue(messages=MessageList(), refetch_delay_ms=0, on_refresh=on_refresh)
        q.request_refresh()
        await asyncio.wait_for(done.wait(), timeout=1.0)

    asyncio.run(run())


def test_reset_drops_pending_refresh():
    async def run():
        calls = []

        async def on_refresh():
            calls.append(1)

        q = StreamingQueue(messages=MessageList(), base_delay_ms=0, refetch_delay_ms=50, on_refresh=on_refresh)
        q.request_refresh()
        q.reset()
        await asyncio.sleep(0.1)
        assert calls == []

    asyncio.run(run())


def test_cancel_token_sleep_returns_early():
    async def run():
        tok = CancelToken()
        tok.begin()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, tok.cancel)
        t0 = loop.time()
        assert await tok.sleep(5.0) is True
        assert loop.time() - t0 < 1.0
        assert await tok.sleep(5.0) is True

    asyncio.run(run())


def test_back_to_back_enqueues_share_one_drain():
    async def run():
        ml = MessageList()
        q = StreamingQueue(messages=ml, base_delay_ms=0)
        q.enqueue("alpha beta ")
        q.enqueue("gamma")
        assert q.is_streaming
        await q.wait_idle()

        assert not q.is_streaming
        assert q.queue_length == 0
        assert [m.text for m in ml.snapshot()] == ["alpha beta gamma"]

    asyncio.run(run())


def test_enqueue_right_after_cancel_starts_a_new_turn():
    async def run():
        ml = MessageList()
        q = StreamingQueue(messages=ml, base_delay_ms=0)
        q.enqueue("one two three")
        await asyncio.sleep(0.01)
        q.cancel()
        q.enqueue("fresh answer")
        await q.wait_idle()

        assert not q.is_streaming
        assert q.queue_length == 0
        texts = [m.text for m in ml.snapshot()]
        assert texts[-1] == "fresh answer"
        assert texts[0].startswith("one ")

    asyncio.run(run())
