import io
import json
import threading

import pytest

from meshsub.tracer import BasicTracer, JSONTracer, RejectReason, open_json_tracer


def read_events(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_json_tracer_writes_ndjson(tmp_path):
    path = tmp_path / "trace.out.json"
    events = [
        {"type": "JOIN", "topic": "test"},
        {"type": "GRAFT", "topic": "test", "peer": "a-peer"},
        {"type": "LEAVE", "topic": "test"},
    ]
    tracer = open_json_tracer(path)
    for event in events:
        tracer.trace(event)
    tracer.close()
    assert read_events(path) == events


def test_json_tracer_encodes_bytes_and_reasons(tmp_path):
    path = tmp_path / "trace.json"
    with open_json_tracer(path) as tracer:
        tracer.trace({"messageID": b"abc", "reason": RejectReason.VALIDATION_FAILED})
    (event,) = read_events(path)
    assert event["messageID"] == "YWJj"
    assert event["reason"] == "validation failed"


def test_events_after_close_are_ignored(tmp_path):
    path = tmp_path / "trace.json"
    tracer = open_json_tracer(path)
    tracer.trace({"type": "JOIN"})
    tracer.close()
    tracer.trace({"type": "LEAVE"})
    assert read_events(path) == [{"type": "JOIN"}]


def test_append_mode_keeps_existing_content(tmp_path):
    path = tmp_path / "trace.json"
    path.write_text('{"type":"JOIN"}\n', encoding="utf-8")
    tracer = open_json_tracer(path, "a")
    tracer.trace({"type": "PRUNE"})
    tracer.close()
    assert read_events(path) == [{"type": "JOIN"}, {"type": "PRUNE"}]


def test_exclusive_mode_refuses_existing_file(tmp_path):
    path = tmp_path / "trace.json"
    path.write_text("", encoding="utf-8")
    with pytest.raises(FileExistsError):
        open_json_tracer(path, "x")


def test_unsupported_mode_rejected(tmp_path):
    with pytest.raises(ValueError):
        open_json_tracer(tmp_path / "trace.json", "r")


def test_non_mapping_event_rejected():
    tracer = JSONTracer(io.StringIO())
    try:
        with pytest.raises(TypeError):
            tracer.trace(["not", "a", "mapping"])
    finally:
        tracer.close()


def test_event_is_copied_when_traced(tmp_path):
    path = tmp_path / "trace.json"
    tracer = open_json_tracer(path)
    event = {"type": "JOIN"}
    tracer.trace(event)
    event["type"] = "LEAVE"
    tracer.close()
    assert read_events(path) == [{"type": "JOIN"}]


def test_concurrent_tracing_loses_nothing(tmp_path):
    path = tmp_path / "trace.json"
    tracer = open_json_tracer(path)

    def emit(worker):
        for i in range(25):
            tracer.trace({"worker": worker, "seq": i})

    threads = [threading.Thread(target=emit, args=(w,)) for w in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    tracer.close()

    written = read_events(path)
    assert len(written) == 4 * 25
    assert sorted((e["worker"], e["seq"]) for e in written) == sorted(
        (w, i) for w in range(4) for i in range(25)
    )


def test_lossy_tracer_drops_on_overflow():
    tracer = BasicTracer(lossy=True, buffer_size=2)
    for i in range(5):
        tracer.trace({"seq": i})
    assert len(tracer) == 3


def test_lossless_tracer_keeps_everything():
    tracer = BasicTracer(buffer_size=2)
    for i in range(5):
        tracer.trace({"seq": i})
    tracer.close()
    tracer.trace({"seq": 99})
    assert len(tracer) == 5