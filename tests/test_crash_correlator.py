"""Tests for crash correlation and crash discovery."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from forgefuzz.storage.models import CrashRecord
from forgefuzz.tools.crash_correlator import CrashCorrelator
from forgefuzz.tools.crash_discovery import (
    CrashDiscoveryError,
    clear_crash_files,
    discover_crashes,
    read_test_count,
    scan_output_dir,
)

BASE = datetime(2024, 12, 19, 12, 0, tzinfo=timezone.utc)


def _crash(fuzzer, name, minutes=0, directory="/f"):
    return CrashRecord(
        fuzzer_name=fuzzer,
        file_path=f"{directory}/{fuzzer}-output/{name}",
        relative_path=name,
        discovered_at=BASE + timedelta(minutes=minutes),
    )


def test_bucket_groups_by_fuzzer_newest_first():
    records = [
        _crash("fuzzA", "crash-1", minutes=1),
        _crash("fuzzB", "crash-2", minutes=2),
        _crash("fuzzA", "crash-3", minutes=3),
    ]

    buckets = CrashCorrelator().bucket(records)

    assert set(buckets) == {"fuzzA", "fuzzB"}
    assert [c.crash_id for c in buckets["fuzzA"].crashes] == ["crash-3", "crash-1"]
    assert buckets["fuzzA"].count == 2
    assert buckets["fuzzA"].newest.crash_id == "crash-3"
    assert buckets["fuzzB"].count == 1


def test_bucket_deduplicates_by_path():
    records = [_crash("fuzzA", "crash-1", minutes=0), _crash("fuzzA", "crash-1", minutes=5)]

    bucket = CrashCorrelator().bucket(records)["fuzzA"]

    assert bucket.count == 1
    assert bucket.newest.discovered_at == BASE + timedelta(minutes=5)


def test_crashes_for_exact_name_only():
    records = [_crash("fuzz", "crash-1"), _crash("fuzzA", "crash-2")]

    crashes = CrashCorrelator().crashes_for("fuzz", records)

    assert [c.fuzzer_name for c in crashes] == ["fuzz"]


def test_merge_folds_incoming():
    existing = [_crash("fuzzA", "crash-1", minutes=1)]
    incoming = [_crash("fuzzA", "crash-2", minutes=9), _crash("fuzzA", "crash-1", minutes=1)]

    merged = CrashCorrelator().merge(existing, incoming)

    assert [c.crash_id for c in merged] == ["crash-2", "crash-1"]


def test_empty_bucket_has_no_newest():
    from forgefuzz.tools.crash_correlator import CrashBucket

    assert CrashBucket("fuzzA").newest is None


# ============================================================================
# Crash discovery
# ============================================================================


def _write(path, data=b"x", mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_discover_crashes_scans_output_directories(tmp_path):
    _write(tmp_path / "fuzzA-output" / "crash-aaa", b"12345")
    _write(tmp_path / "fuzzA-output" / "corpus" / "seed")
    _write(tmp_path / "fuzzA-output" / "test-count.txt")
    _write(tmp_path / "fuzzB-output" / "crash-bbb")
    _write(tmp_path / "fuzzB")  # the fuzzer binary itself
    _write(tmp_path / "-output" / "crash-nameless")

    records = discover_crashes(tmp_path)

    assert sorted((r.fuzzer_name, r.crash_id) for r in records) == [
        ("fuzzA", "crash-aaa"),
        ("fuzzB", "crash-bbb"),
    ]
    crash_a = next(r for r in records if r.fuzzer_name == "fuzzA")
    assert crash_a.file_size == 5
    assert crash_a.file_path == str(tmp_path / "fuzzA-output" / "crash-aaa")
    assert crash_a.relative_path == "crash-aaa"


def test_discover_crashes_uses_mtime(tmp_path):
    _write(tmp_path / "fuzzA-output" / "crash-1", mtime=1_700_000_000)

    record = discover_crashes(tmp_path)[0]

    assert record.discovered_at == datetime.fromtimestamp(1_700_000_000, timezone.utc)


def test_missing_fuzzing_directory_has_no_crashes(tmp_path):
    assert discover_crashes(tmp_path / "missing") == []
    assert scan_output_dir(tmp_path, "fuzzA") == []


@pytest.mark.skipif(
    hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores permissions"
)
def test_unreadable_directory_raises(tmp_path):
    fuzzing_dir = tmp_path / "fuzzing"
    _write(fuzzing_dir / "fuzzA-output" / "crash-1")
    fuzzing_dir.chmod(0o000)
    try:
        with pytest.raises(CrashDiscoveryError):
            discover_crashes(fuzzing_dir)
    finally:
        fuzzing_dir.chmod(0o755)


def test_read_test_count(tmp_path):
    _write(tmp_path / "fuzzA-output" / "test-count.txt", b"1234\n")
    _write(tmp_path / "fuzzB-output" / "test-count.txt", b"lots")

    assert read_test_count(tmp_path, "fuzzA") == 1234
    assert read_test_count(tmp_path, "fuzzB") == 0
    assert read_test_count(tmp_path, "fuzzC") == 0


def test_read_test_count_undecodable(tmp_path):
    _write(tmp_path / "fuzzA-output" / "test-count.txt", b"\xff\xfe\x00")

    assert read_test_count(tmp_path, "fuzzA") == 0


def test_clear_crash_files(tmp_path):
    output_dir = tmp_path / "fuzzA-output"
    for name in ("crash-1", "crash-2", "backtrace-1", "test-count.txt", "notes.txt"):
        _write(output_dir / name)
    _write(tmp_path / "fuzzB-output" / "crash-9")

    assert clear_crash_files(tmp_path, "fuzzA") == 2
    assert [p.name for p in output_dir.iterdir()] == ["notes.txt"]
    assert (tmp_path / "fuzzB-output" / "crash-9").exists()
    assert clear_crash_files(tmp_path, "missing") == 0
