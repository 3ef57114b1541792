import base64
import os
import threading

import pytest

from roomdrop.errors import (
    ConflictError,
    InvalidMessageError,
    NotFoundError,
    SizeLimitError,
    StaleStateError,
)
from roomdrop.models import FileMeta, TransferMode, TransferState


def meta(name="doc.pdf", size=2048, mode=TransferMode.DIRECT):
    return FileMeta(file_name=name, file_size=size, mime_type="application/pdf", mode=mode)


def offer(hub, name="doc.pdf", size=2048, mode=TransferMode.DIRECT):
    session, envelopes = hub.transfers.offer("A", "B", meta(name, size, mode))
    hub.relay.send_all(envelopes)
    return session


def accepted(hub, **kwargs):
    session = offer(hub, **kwargs)
    hub.relay.send_all(hub.transfers.respond(session.session_id, True, responder="B"))
    return session


def test_duplicate_offer_conflicts(hub, pair):
    offer(hub, name="x")
    with pytest.raises(ConflictError):
        hub.transfers.offer("A", "B", meta("x"))
    # Different file or direction is a different triple
    hub.transfers.offer("A", "B", meta("y"))


def test_reoffer_allowed_after_terminal_state(hub, pair):
    session = offer(hub, name="x")
    hub.transfers.respond(session.session_id, False, responder="B")
    again, _ = hub.transfers.offer("A", "B", meta("x"))
    assert again.session_id != session.session_id


def test_offer_requires_shared_room(hub, pair, connect):
    connect("C")
    with pytest.raises(NotFoundError):
        hub.transfers.offer("A", "C", meta())
    with pytest.raises(InvalidMessageError):
        hub.transfers.offer("A", "A", meta())


def test_offer_over_limit_sends_nothing(hub, pair):
    a, b = pair
    with pytest.raises(SizeLimitError):
        hub.transfers.offer("A", "B", meta(size=hub.settings.max_direct_size + 1))
    with pytest.raises(SizeLimitError):
        hub.transfers.offer("A", "B", meta(size=hub.settings.max_file_size + 1, mode=TransferMode.CHUNKED))
    assert b.messages == []
    assert hub.transfers.sessions == {}


def test_offer_notifies_both_sides(hub, pair):
    a, b = pair
    session = offer(hub)
    for outbox in pair:
        [event] = outbox.of_type("transfer-offered")
        assert event["session_id"] == session.session_id
        assert event["from"] == "A"
        assert event["state"] == "offered"


def test_respond_twice_is_stale(hub, pair):
    session = accepted(hub)
    with pytest.raises(StaleStateError):
        hub.transfers.respond(session.session_id, False, responder="B")
    assert hub.transfers.get(session.session_id).state == TransferState.ACCEPTED


def test_only_receiver_may_respond(hub, pair):
    session = offer(hub)
    with pytest.raises(NotFoundError):
        hub.transfers.respond(session.session_id, True, responder="A")
    with pytest.raises(NotFoundError):
        hub.transfers.respond("missing", True)


def test_direct_transfer_completes(hub, pair):
    a, b = pair
    data = os.urandom(2048)
    session = accepted(hub)
    envelopes = hub.transfers.begin_direct_transfer(
        session.session_id, base64.b64encode(data).decode(), caller="A"
    )
    hub.relay.send_all(envelopes)

    assert b.states(session.session_id) == ["accepted", "transferring", "completed"]
    assert a.states(session.session_id) == ["accepted", "transferring", "completed"]
    [ready] = b.of_type("transfer-ready-for-download")
    assert base64.b64decode(ready["data"]) == data
    assert ready["file_name"] == "doc.pdf"
    assert hub.transfers.progress(session.session_id) == 100
    assert a.of_type("transfer-ready-for-download") == []


def test_direct_payload_size_mismatch_fails(hub, pair):
    a, b = pair
    session = accepted(hub)
    hub.relay.send_all(hub.transfers.begin_direct_transfer(
        session.session_id, base64.b64encode(b"short").decode()
    ))
    assert b.states(session.session_id)[-1] == "failed"
    assert a.of_type("error")[0]["code"] == "corruption"
    assert b.of_type("error")[0]["code"] == "corruption"
    assert b.of_type("transfer-ready-for-download") == []


def test_direct_payload_before_accept_is_stale(hub, pair):
    session = offer(hub)
    with pytest.raises(StaleStateError):
        hub.transfers.begin_direct_transfer(session.session_id, "")
    assert hub.transfers.get(session.session_id).state == TransferState.OFFERED


def test_direct_transfer_to_vanished_receiver_fails(hub, pair):
    session = accepted(hub)
    hub.relay.unregister("B")
    data = base64.b64encode(b"z" * 2048).decode()
    hub.transfers.begin_direct_transfer(session.session_id, data)
    assert hub.transfers.get(session.session_id).state == TransferState.FAILED


def test_chunked_transfer_progress_is_monotonic(hub, pair):
    a, b = pair
    data = os.urandom(10_000)
    session = accepted(hub, name="video.mp4", size=len(data), mode=TransferMode.CHUNKED)
    sid = session.session_id
    hub.relay.send_all(hub.transfers.begin_chunked_transfer(sid, len(data), 1000, caller="A"))
    assert session.chunk_size == 1000

    progresses = []
    for offset in range(0, len(data), 1000):
        hub.relay.send_all(hub.transfers.push_chunk(sid, offset, data[offset:offset + 1000]))
        progresses.append(session.progress)

    assert progresses == sorted(progresses)
    assert progresses[-1] == 100
    events = [m["progress"] for m in b.of_type("transfer-state-changed") if m["session_id"] == sid]
    assert events == sorted(events)
    assert b.states(sid)[-1] == "completed"
    [ready] = b.of_type("transfer-ready-for-download")
    assert base64.b64decode(ready["data"]) == data


def test_first_chunk_starts_accepted_session(hub, pair):
    session = accepted(hub, name="v", size=4, mode=TransferMode.CHUNKED)
    hub.transfers.push_chunk(session.session_id, 0, b"ab")
    assert session.state == TransferState.TRANSFERRING
    assert session.chunk_size == hub.settings.default_chunk_size
    assert hub.transfers.progress(session.session_id) == 50


def test_overlapping_chunk_fails_session(hub, pair):
    a, b = pair
    session = accepted(hub, name="v", size=100, mode=TransferMode.CHUNKED)
    sid = session.session_id
    hub.transfers.begin_chunked_transfer(sid, 100)
    hub.transfers.push_chunk(sid, 0, b"x" * 50)
    hub.relay.send_all(hub.transfers.push_chunk(sid, 40, b"y" * 20))

    assert hub.transfers.get(sid).state == TransferState.FAILED
    assert a.of_type("error")[0]["code"] == "corruption"
    assert b.of_type("error")[0]["code"] == "corruption"
    assert sid not in hub.buffer.chunk_sets
    with pytest.raises(StaleStateError):
        hub.transfers.push_chunk(sid, 50, b"z" * 50)


def test_stream_announcing_wrong_size_fails(hub, pair):
    session = accepted(hub, name="v", size=100, mode=TransferMode.CHUNKED)
    hub.transfers.begin_chunked_transfer(session.session_id, 99)
    assert session.state == TransferState.FAILED


def test_end_of_stream_with_missing_bytes_fails(hub, pair):
    session = accepted(hub, name="v", size=100, mode=TransferMode.CHUNKED)
    hub.transfers.begin_chunked_transfer(session.session_id, 100)
    hub.transfers.push_chunk(session.session_id, 0, b"x" * 60)
    hub.transfers.finish_chunked(session.session_id)
    assert session.state == TransferState.FAILED
    assert session.progress == 60


def test_zero_byte_chunked_file(hub, pair):
    a, b = pair
    session = accepted(hub, name="empty", size=0, mode=TransferMode.CHUNKED)
    hub.transfers.begin_chunked_transfer(session.session_id, 0)
    assert hub.transfers.progress(session.session_id) == 0
    hub.relay.send_all(hub.transfers.finish_chunked(session.session_id))
    assert session.state == TransferState.COMPLETED
    assert hub.transfers.progress(session.session_id) == 100
    assert b.of_type("transfer-ready-for-download")[0]["data"] == ""


def test_abort_is_idempotent(hub, pair):
    a, b = pair
    session = offer(hub)
    hub.relay.send_all(hub.transfers.abort(session.session_id, "changed my mind", caller="A"))
    assert hub.transfers.abort(session.session_id, "again") == []
    assert b.states(session.session_id) == ["cancelled"]
    assert hub.transfers.get(session.session_id).reason == "changed my mind"


def test_abort_while_transferring_fails(hub, pair):
    session = accepted(hub, name="v", size=100, mode=TransferMode.CHUNKED)
    hub.transfers.begin_chunked_transfer(session.session_id, 100)
    hub.transfers.abort(session.session_id, "lost peer")
    assert session.state == TransferState.FAILED


def test_abort_after_accept_cancels(hub, pair):
    session = accepted(hub)
    hub.transfers.abort(session.session_id, "nope")
    assert session.state == TransferState.CANCELLED


def test_archive_is_bounded(hub, pair):
    for i in range(hub.settings.archive_size + 3):
        session = offer(hub, name=f"f{i}")
        hub.transfers.abort(session.session_id, "x")
    assert len(hub.transfers.archive) == hub.settings.archive_size


def test_undeliverable_direct_payload_fails(hub, pair):
    a, b = pair
    session = accepted(hub, size=4)
    b.closed = True
    hub.relay.send_all(hub.transfers.begin_direct_transfer(
        session.session_id, base64.b64encode(b"abcd").decode(), caller="A"
    ))
    assert session.state == TransferState.FAILED
    assert session.reason == "receiver unreachable"
    assert a.states(session.session_id) == ["accepted", "transferring", "failed"]
    assert b.of_type("transfer-ready-for-download") == []


def test_undeliverable_reassembled_file_fails(hub, pair):
    a, b = pair
    session = accepted(hub, name="v", size=4, mode=TransferMode.CHUNKED)
    hub.transfers.begin_chunked_transfer(session.session_id, 4)
    b.closed = True
    hub.relay.send_all(hub.transfers.push_chunk(session.session_id, 0, b"abcd"))
    assert session.state == TransferState.FAILED
    assert a.states(session.session_id)[-1] == "failed"


def test_offer_to_closed_connection_is_refused(hub, pair):
    a, b = pair
    b.closed = True
    with pytest.raises(NotFoundError):
        hub.transfers.offer("A", "B", meta())
    assert hub.transfers.sessions == {}


def test_session_id_reuse_conflicts_across_files(hub, pair):
    hub.transfers.offer("A", "B", meta("x"), session_id="dup")
    with pytest.raises(ConflictError):
        hub.transfers.offer("A", "B", meta("y"), session_id="dup")


def test_concurrent_offers_with_same_session_id(hub, pair):
    barrier = threading.Barrier(8)
    outcomes = []

    def offer_file(i):
        barrier.wait()
        try:
            hub.transfers.offer("A", "B", meta(f"f{i}"), session_id="shared")
            outcomes.append("ok")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=offer_file, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert list(hub.transfers.active_keys.values()) == ["shared"]
