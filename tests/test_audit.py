"""Tests for the hash-chained audit trail."""

import json
import threading
import time
from datetime import datetime, timezone

import pytest

from authgate.service.audit import AuditTrail, ListSink, canonical_json


def _trail(sink=None):
    return AuditTrail("audit-key", sink=sink or ListSink())


def test_requires_key():
    with pytest.raises(ValueError):
        AuditTrail("")


def test_entries_are_chained():
    sink = ListSink()
    trail = _trail(sink)
    first = trail.record("login_attempt", status="failure", identity="a@example.com")
    second = trail.record("login_attempt", status="success", identity="a@example.com")

    assert first["hash_prev"] == ""
    assert second["hash_prev"] == first["hash_current"]
    assert len(first["hash_current"]) == 64
    assert sink.entries == [first, second]
    assert trail.verify_chain(sink.entries) == {"valid": True, "checked": 2, "mismatches": []}


def test_threaded_records_reach_sink_in_chain_order():
    sink = ListSink()

    def slow_sink(entry):
        time.sleep(0.001)
        sink(entry)

    trail = _trail(slow_sink)

    def worker(worker_id):
        for attempt in range(20):
            trail.record("login_attempt", worker=worker_id, attempt=attempt)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert trail.verify_chain(sink.entries) == {"valid": True, "checked": 160, "mismatches": []}


def test_edit_is_detected():
    sink = ListSink()
    trail = _trail(sink)
    for index in range(3):
        trail.record("login_attempt", attempt=index)
    sink.entries[1]["attempt"] = 99

    result = trail.verify_chain(sink.entries)
    assert result["valid"] is False
    assert result["mismatches"] == [1]


def test_deletion_is_detected():
    sink = ListSink()
    trail = _trail(sink)
    for index in range(3):
        trail.record("login_attempt", attempt=index)
    del sink.entries[1]

    result = trail.verify_chain(sink.entries)
    assert result["valid"] is False
    assert 1 in result["mismatches"]


def test_dropping_head_is_detected():
    sink = ListSink()
    trail = _trail(sink)
    for index in range(2):
        trail.record("login_attempt", attempt=index)

    assert not trail.verify_chain(sink.entries[1:])["valid"]
    assert trail.verify_chain(sink.entries[1:], start_hash=sink.entries[0]["hash_current"])[
        "valid"
    ]


def test_other_key_cannot_verify():
    sink = ListSink()
    _trail(sink).record("login_attempt", status="success")
    assert not AuditTrail("different-key").verify_chain(sink.entries)["valid"]


def test_entries_survive_json_round_trip():
    sink = ListSink()
    trail = _trail(sink)
    trail.record("login_blocked", account_locked_until=datetime(2025, 1, 1, tzinfo=timezone.utc))
    stored = [json.loads(json.dumps(entry)) for entry in sink.entries]
    assert trail.verify_chain(stored)["valid"]
    assert stored[0]["account_locked_until"] == "2025-01-01 00:00:00+00:00"


def test_sink_failure_does_not_raise():
    def broken(entry):
        raise RuntimeError("disk full")

    trail = AuditTrail("audit-key", sink=broken)
    entry = trail.record("login_attempt", status="failure")
    assert entry["type"] == "login_attempt"


def test_canonical_json_is_order_independent():
    assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1}) == '{"a":2,"b":1}'


def test_list_sink_filters_by_type():
    sink = ListSink()
    trail = _trail(sink)
    trail.record("login_attempt")
    trail.record("recaptcha_verification", outcome="RECAPTCHA_SKIPPED")
    assert [e["outcome"] for e in sink.of_type("recaptcha_verification")] == ["RECAPTCHA_SKIPPED"]
