import asyncio

import pytest

from ham_recorder.capture.protocol import CaptureProgress, StartCapture, StopCapture
from ham_recorder.capture.proxy import CaptureContextProxy, purge_spool
from ham_recorder.errors import CaptureContextError


def test_ensure_creates_a_single_context(tmp_path, capture_factory_cls):
    factory = capture_factory_cls()
    proxy = CaptureContextProxy(factory, spool_dir=tmp_path)

    async def runner():
        assert not proxy.exists
        await asyncio.gather(proxy.ensure(), proxy.ensure())
        await proxy.ensure()

    asyncio.run(runner())
    assert proxy.exists
    assert len(factory.contexts) == 1


def test_ensure_replaces_dead_context(tmp_path, capture_factory_cls):
    factory = capture_factory_cls()
    proxy = CaptureContextProxy(factory, spool_dir=tmp_path)

    async def runner():
        await proxy.ensure()
        factory.last.closed = True
        await proxy.ensure()

    asyncio.run(runner())
    assert len(factory.contexts) == 2
    assert not factory.contexts[1].closed


def test_send_requires_a_context(tmp_path, capture_factory_cls):
    proxy = CaptureContextProxy(capture_factory_cls(), spool_dir=tmp_path)
    with pytest.raises(CaptureContextError, match="not running"):
        proxy.send(StopCapture())


def test_send_and_events_round_trip(tmp_path, capture_factory_cls):
    def echo_progress(context, message):
        if isinstance(message, StartCapture):
            context.emit(CaptureProgress(session_id=message.session_id, elapsed=0, total=5))

    factory = capture_factory_cls(echo_progress)
    proxy = CaptureContextProxy(factory, spool_dir=tmp_path)

    async def runner():
        await proxy.ensure()
        proxy.send(StartCapture(session_id="s", device_id="1", duration_ms=5000, mime_type="audio/wav"))
        return await asyncio.wait_for(proxy.next_event(), timeout=1)

    event = asyncio.run(runner())
    assert event == CaptureProgress(session_id="s", elapsed=0, total=5)


def test_close_is_idempotent(tmp_path, capture_factory_cls):
    factory = capture_factory_cls()
    proxy = CaptureContextProxy(factory, spool_dir=tmp_path)

    async def runner():
        await proxy.close()
        await proxy.ensure()
        await proxy.close()
        await proxy.close()

    asyncio.run(runner())
    assert not proxy.exists
    assert factory.last.closed


def test_factory_failure_is_wrapped(tmp_path):
    async def broken(sink):
        raise OSError("cannot fork")

    proxy = CaptureContextProxy(broken, spool_dir=tmp_path)
    with pytest.raises(CaptureContextError, match="cannot fork"):
        asyncio.run(proxy.ensure())
    assert not proxy.exists


def test_new_context_starts_with_a_clean_spool(tmp_path, capture_factory_cls):
    spool = tmp_path / "spool"
    spool.mkdir()
    (spool / "capture-old.wav").write_bytes(b"stale")
    (spool / "notes.txt").write_text("keep")
    factory = capture_factory_cls()
    proxy = CaptureContextProxy(factory, spool_dir=spool)

    asyncio.run(proxy.ensure())

    assert not (spool / "capture-old.wav").exists()
    assert (spool / "notes.txt").read_text() == "keep"
    assert len(factory.contexts) == 1


def test_purge_spool_tolerates_missing_directory(tmp_path):
    assert purge_spool(tmp_path / "missing") == []

    (tmp_path / "capture-a.webm").write_bytes(b"a")
    (tmp_path / "capture-b").mkdir()
    assert purge_spool(tmp_path) == ["capture-a.webm"]
    assert (tmp_path / "capture-b").is_dir()
