from pathlib import Path
import json

import pytest

from qr_wifi.connection_log import ConnectionLog


def test_connection_log_records_and_tails_entries() -> None:
    log = ConnectionLog(max_entries=3)
    for index in range(5):
        log.record("retrying", f"attempt {index}", ssid="Home", state="associating")

    entries = log.tail()
    assert [entry.message for entry in entries] == ["attempt 2", "attempt 3", "attempt 4"]
    assert [entry.message for entry in log.tail(2)] == ["attempt 3", "attempt 4"]
    assert entries[0].ssid == "Home"
    assert entries[0].state == "associating"


def test_connection_log_filters_by_event() -> None:
    log = ConnectionLog()
    log.record("started", "Connecting", ssid="Home")
    log.record("failed", "Boom", ssid="Home", metadata={"kind": "fatal", "code": None})

    failed = log.tail(event="failed")
    assert len(failed) == 1
    assert failed[0].metadata == {"kind": "fatal"}
    assert failed[0].to_dict()["metadata"] == {"kind": "fatal"}
    assert "metadata" not in log.tail(event="started")[0].to_dict()


def test_connection_log_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "wifi.jsonl"
    log = ConnectionLog(path)
    log.record("started", "Connecting", ssid="Home")
    log.record("succeeded", "Connected", ssid="Home", metadata={"retries": 1})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["event"] == "succeeded"

    reloaded = ConnectionLog(path)
    assert [entry.event for entry in reloaded.tail()] == ["started", "succeeded"]
    assert reloaded.tail()[1].metadata == {"retries": 1}


def test_connection_log_skips_corrupt_lines(tmp_path: Path) -> None:
    path = tmp_path / "wifi.jsonl"
    path.write_text(
        "\n".join(
            [
                "not json",
                json.dumps({"event": "started"}),
                json.dumps([1, 2]),
                json.dumps({"event": "failed", "message": "Boom", "timestamp": "bad"}),
            ]
        ),
        encoding="utf-8",
    )

    entries = ConnectionLog(path).tail()
    assert [entry.event for entry in entries] == ["failed"]


def test_connection_log_clear_and_validation() -> None:
    log = ConnectionLog()
    log.record("started", "Connecting")
    log.clear()
    assert log.tail() == []
    with pytest.raises(ValueError):
        ConnectionLog(max_entries=0)


def test_connection_log_trims_file_to_retained_entries_on_load(tmp_path: Path) -> None:
    path = tmp_path / "wifi.jsonl"
    log = ConnectionLog(path)
    for index in range(5):
        log.record("retrying", f"attempt {index}", ssid="Home")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    reloaded = ConnectionLog(path, max_entries=2)

    assert [entry.message for entry in reloaded.tail()] == ["attempt 3", "attempt 4"]
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["attempt 3", "attempt 4"]
    assert not (tmp_path / "wifi.jsonl.tmp").exists()

    reloaded.record("succeeded", "Connected", ssid="Home")
    assert len(path.read_text(encoding="utf-8").splitlines()) == 3


def test_connection_log_leaves_small_file_untouched(tmp_path: Path) -> None:
    path = tmp_path / "wifi.jsonl"
    ConnectionLog(path).record("started", "Connecting", ssid="Home")
    before = path.read_text(encoding="utf-8")

    ConnectionLog(path)

    assert path.read_text(encoding="utf-8") == before
