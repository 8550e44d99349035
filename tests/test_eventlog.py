import json
import threading
from datetime import datetime

import pytest

from agentorch.eventlog import EventLogError, EventLogWriter, list_log_files, read_messages


class JsonMessage:
    def __init__(self, msg_type, sender, recipient, **payload):
        self.data = {"type": msg_type, "from_agent": sender, "to_agent": recipient, "payload": payload}

    def to_json(self):
        return json.dumps(self.data).encode("utf-8")


def msg(msg_type, sender, recipient, **payload):
    return {"type": msg_type, "from_agent": sender, "to_agent": recipient, "payload": payload}


@pytest.fixture
def writer(tmp_path):
    w = EventLogWriter(tmp_path, 24)
    yield w
    w.close()


def test_new_writer_creates_directory_and_file(tmp_path):
    log_dir = tmp_path / "nested" / "logs"
    with EventLogWriter(log_dir, 24) as w:
        current = w.current_log_file()
        assert log_dir.is_dir()
        assert current.exists()
        assert current.name == f"events-{datetime.now():%Y-%m-%d}.jsonl"


def test_invalid_rotation_hours_default_to_daily(tmp_path):
    with EventLogWriter(tmp_path, 0) as w:
        assert w.rotation_hours == 24


def test_write_message(writer):
    writer.write_message(msg("TASK", "architect", "claude", story_id="001", content="Implement health endpoint"))
    data = writer.current_log_file().read_text(encoding="utf-8")
    assert data.endswith("\n")
    record = json.loads(data.strip())
    assert record["payload"]["story_id"] == "001"


def test_write_object_with_to_json(writer):
    writer.write_message(JsonMessage("RESULT", "claude", "architect", status="completed"))
    records = read_messages(writer.current_log_file())
    assert records == [
        {"type": "RESULT", "from_agent": "claude", "to_agent": "architect", "payload": {"status": "completed"}}
    ]


def test_unserializable_message_raises(writer):
    with pytest.raises(EventLogError):
        writer.write_message({"bad": object()})


def test_write_multiple_messages(writer):
    messages = [
        msg("TASK", "architect", "claude"),
        msg("RESULT", "claude", "architect"),
        msg("ERROR", "claude", "architect"),
    ]
    for i, m in enumerate(messages):
        m["payload"]["sequence"] = i
        writer.write_message(m)
    read = read_messages(writer.current_log_file())
    assert len(read) == 3
    assert [r["payload"]["sequence"] for r in read] == [0, 1, 2]
    assert [r["type"] for r in read] == ["TASK", "RESULT", "ERROR"]


def test_rotation(writer):
    writer.write_message(msg("TASK", "architect", "claude", day="today"))
    initial = writer.current_log_file()
    writer.rotate("2025-12-25")
    rotated = writer.current_log_file()
    assert rotated.name == "events-2025-12-25.jsonl"
    assert rotated != initial
    assert rotated.exists()
    assert [r["payload"]["day"] for r in read_messages(initial)] == ["today"]
    assert read_messages(rotated) == []

    writer.write_message(msg("RESULT", "claude", "architect", day="again"))
    assert writer.current_log_file() == initial
    assert [r["payload"]["day"] for r in read_messages(initial)] == ["today", "again"]


def test_read_messages(tmp_path):
    log_file = tmp_path / "test-events.jsonl"
    log_file.write_text(
        json.dumps(msg("TASK", "architect", "claude", task="test1"))
        + "\n"
        + json.dumps(msg("RESULT", "claude", "architect", result="success"))
        + "\n",
        encoding="utf-8",
    )
    records = read_messages(log_file)
    assert len(records) == 2
    assert records[0]["payload"]["task"] == "test1"
    assert records[1]["payload"]["result"] == "success"


def test_read_last_line_without_newline(tmp_path):
    log_file = tmp_path / "events.jsonl"
    log_file.write_text('{"a": 1}\n\n{"b": 2}', encoding="utf-8")
    assert read_messages(log_file) == [{"a": 1}, {"b": 2}]


def test_read_empty_file(tmp_path):
    log_file = tmp_path / "empty.jsonl"
    log_file.touch()
    assert read_messages(log_file) == []


def test_read_invalid_json(tmp_path):
    log_file = tmp_path / "bad.jsonl"
    log_file.write_text("not json\n", encoding="utf-8")
    with pytest.raises(EventLogError):
        read_messages(log_file)


def test_read_missing_file(tmp_path):
    with pytest.raises(EventLogError):
        read_messages(tmp_path / "missing.jsonl")


def test_list_log_files(tmp_path):
    for name in [
        "events-2025-01-01.jsonl",
        "events-2025-01-02.jsonl",
        "events-2025-01-03.jsonl",
        "other-file.txt",
    ]:
        (tmp_path / name).touch()
    files = list_log_files(tmp_path)
    assert [f.name for f in files] == [
        "events-2025-01-01.jsonl",
        "events-2025-01-02.jsonl",
        "events-2025-01-03.jsonl",
    ]


def test_writer_close_and_reopen(tmp_path):
    w = EventLogWriter(tmp_path, 24)
    m = msg("TASK", "test", "test")
    w.write_message(m)
    w.close()
    assert w.current_log_file() is None
    w.write_message(m)
    try:
        assert len(read_messages(w.current_log_file())) == 2
    finally:
        w.close()


def test_context_manager_closes(tmp_path):
    with EventLogWriter(tmp_path) as w:
        w.write_message(msg("TASK", "a", "b"))
    assert w.current_log_file() is None


def test_concurrent_writes(writer):
    def work(i):
        writer.write_message(msg("TASK", "test", "test", id=i))

    threads = [threading.Thread(target=work, args=(i,)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    records = read_messages(writer.current_log_file())
    assert len(records) == 10
    assert sorted(r["payload"]["id"] for r in records) == list(range(10))


def test_event_log_usage_example(writer):
    writer.write_message(
        msg("TASK", "architect", "claude", story_id="001", requirements=["GET /health", "return 200 OK"])
    )
    writer.write_message(msg("RESULT", "claude", "architect", files_created=["health.go", "health_test.go"]))
    writer.write_message(msg("ERROR", "claude", "architect", error="API rate limit exceeded"))
    writer.write_message(msg("QUESTION", "claude", "architect", question="Use goroutines?"))
    writer.write_message(msg("SHUTDOWN", "orchestrator", "all", reason="User requested shutdown"))
    records = read_messages(writer.current_log_file())
    assert [r["type"] for r in records] == ["TASK", "RESULT", "ERROR", "QUESTION", "SHUTDOWN"]
    assert records[0]["payload"]["requirements"] == ["GET /health", "return 200 OK"]
    assert records[4]["to_agent"] == "all"