from datetime import datetime, timedelta, timezone

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from quota.models import CallRecord
from quota.persistence import load_history, save_history
from quota.tracker import QuotaTracker


def test_history_survives_a_restart(tmp_path):
    path = tmp_path / "state" / "history.jsonl"
    tracker = QuotaTracker()
    tracker.record_call("market-news", "sonar", 120, True, 800)
    tracker.record_call("chat", "sonar", 0, False, 15000)

    assert save_history(str(path), tracker.snapshot()) == 2
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2

    restored = QuotaTracker()
    assert restored.load(load_history(str(path))) == 2
    m = restored.metrics()
    assert m.requests_last_24h == 2
    assert m.tokens_used_24h == 120
    assert [r.success for r in m.history] == [True, False]


def test_corrupt_lines_are_skipped(tmp_path):
    now = datetime.now(timezone.utc)
    good = CallRecord(endpoint="chat", model="sonar", tokens=5, timestamp=now - timedelta(minutes=1))
    path = tmp_path / "history.jsonl"
    path.write_text(good.model_dump_json() + "\n{not json\n\n" + '{"endpoint": "chat"}\n', encoding="utf-8")

    records = load_history(str(path))
    assert records == [good]


def test_missing_file_is_empty_history(tmp_path):
    assert load_history(str(tmp_path / "nope.jsonl")) == []


def test_undecodable_bytes_are_skipped(tmp_path):
    now = datetime.now(timezone.utc)
    good = CallRecord(endpoint="chat", model="sonar", tokens=3, timestamp=now)
    path = tmp_path / "history.jsonl"
    path.write_bytes(good.model_dump_json().encode("utf-8") + b"\n\xff\xfe garbage\n")

    assert load_history(str(path)) == [good]


def test_naive_timestamps_are_read_as_utc(tmp_path):
    aware = CallRecord(endpoint="chat", model="sonar", timestamp=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    path = tmp_path / "history.jsonl"
    path.write_text(
        aware.model_dump_json() + "\n"
        '{"endpoint": "chat", "model": "sonar", "timestamp": "2026-03-02T08:00:00"}\n',
        encoding="utf-8",
    )

    records = load_history(str(path))
    assert [r.timestamp.hour for r in records] == [8, 9]
    assert all(r.timestamp.tzinfo is not None for r in records)
    assert records[0].timestamp == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
