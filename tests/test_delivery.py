import asyncio

import pytest

from ham_recorder.delivery import FileDelivery, unique_destination
from ham_recorder.errors import DeliveryError


def _artifact(tmp_path, name="capture-abc.webm", payload=b"opus"):
    spool = tmp_path / "spool"
    spool.mkdir(exist_ok=True)
    path = spool / name
    path.write_bytes(payload)
    return path


def test_unique_destination_adds_counter(tmp_path):
    assert unique_destination(tmp_path, "a.webm") == tmp_path / "a.webm"
    (tmp_path / "a.webm").write_bytes(b"")
    assert unique_destination(tmp_path, "a.webm") == tmp_path / "a (1).webm"
    (tmp_path / "a (1).webm").write_bytes(b"")
    assert unique_destination(tmp_path, "a.webm") == tmp_path / "a (2).webm"


def test_deliver_moves_artifact_with_its_suffix(tmp_path):
    artifact = _artifact(tmp_path)
    delivery = FileDelivery(tmp_path / "downloads")

    destination = asyncio.run(delivery.deliver(str(artifact), "145500000_FM_20240601_1200"))

    assert destination == tmp_path / "downloads" / "145500000_FM_20240601_1200.webm"
    assert destination.read_bytes() == b"opus"
    assert not artifact.exists()


def test_deliver_never_overwrites(tmp_path):
    delivery = FileDelivery(tmp_path / "downloads")
    first = asyncio.run(delivery.deliver(str(_artifact(tmp_path, payload=b"one")), "rec"))
    second = asyncio.run(delivery.deliver(str(_artifact(tmp_path, payload=b"two")), "rec"))

    assert first.name == "rec.webm"
    assert second.name == "rec (1).webm"
    assert first.read_bytes() == b"one"
    assert second.read_bytes() == b"two"


def test_deliver_strips_directories_from_filename(tmp_path):
    delivery = FileDelivery(tmp_path / "downloads")
    destination = asyncio.run(
        delivery.deliver(str(_artifact(tmp_path, name="c.wav")), "../../escape")
    )
    assert destination.parent == tmp_path / "downloads"
    assert destination.name == "escape.wav"


def test_deliver_missing_artifact(tmp_path):
    delivery = FileDelivery(tmp_path / "downloads")
    with pytest.raises(DeliveryError, match="not found"):
        asyncio.run(delivery.deliver(str(tmp_path / "missing.webm"), "rec"))


def test_deliver_rejects_empty_name(tmp_path):
    delivery = FileDelivery(tmp_path / "downloads")
    with pytest.raises(DeliveryError, match="empty"):
        asyncio.run(delivery.deliver(str(_artifact(tmp_path)), ""))
