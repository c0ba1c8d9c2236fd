"""
Crash discovery for fuzzer output directories.

Directory structure:
    <workspace>/<output_directory>/
        <fuzzer>-output/
            corpus/
            crash-<hash>
            backtrace-<hash>
            test-count.txt
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from ..storage.models import CrashRecord
from .output_parsers import OUTPUT_DIR_SUFFIX

logger = logging.getLogger(__name__)

CRASH_PREFIX = "crash-"
BACKTRACE_PREFIX = "backtrace-"
TEST_COUNT_FILE = "test-count.txt"


class CrashDiscoveryError(RuntimeError):
    """The fuzzing output directory exists but could not be scanned."""


def output_dir_for(fuzzing_dir: Path, fuzzer_name: str) -> Path:
    return fuzzing_dir / f"{fuzzer_name}{OUTPUT_DIR_SUFFIX}"


def _crashes_in(output_dir: Path, fuzzer_name: str) -> list[CrashRecord]:
    records: list[CrashRecord] = []
    for path in output_dir.iterdir():
        if not path.name.startswith(CRASH_PREFIX) or not path.is_file():
            continue
        stat = path.stat()
        records.append(
            CrashRecord(
                fuzzer_name=fuzzer_name,
                file_path=str(path),
                relative_path=path.name,
                discovered_at=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
                file_size=stat.st_size,
            )
        )
    return records


def scan_output_dir(fuzzing_dir: Path, fuzzer_name: str) -> list[CrashRecord]:
    """Crash files of one fuzzer. A missing output directory has none."""
    output_dir = output_dir_for(fuzzing_dir, fuzzer_name)
    if not output_dir.is_dir():
        return []
    try:
        return _crashes_in(output_dir, fuzzer_name)
    except OSError as e:
        raise CrashDiscoveryError(f"Failed to scan {output_dir}: {e}") from e


def discover_crashes(fuzzing_dir: Path) -> list[CrashRecord]:
    """
    Scan every ``*-output`` directory under ``fuzzing_dir`` for crash files.

    Raises:
        CrashDiscoveryError: The directory exists but cannot be read
    """
    if not fuzzing_dir.is_dir():
        return []

    records: list[CrashRecord] = []
    try:
        for entry in sorted(fuzzing_dir.iterdir()):
            if not entry.is_dir() or not entry.name.endswith(OUTPUT_DIR_SUFFIX):
                continue
            fuzzer_name = entry.name[: -len(OUTPUT_DIR_SUFFIX)]
            if not fuzzer_name:
                continue
            records.extend(_crashes_in(entry, fuzzer_name))
    except OSError as e:
        raise CrashDiscoveryError(f"Failed to scan {fuzzing_dir}: {e}") from e

    logger.debug("Found %d crash file(s) under %s", len(records), fuzzing_dir)
    return records


def read_test_count(fuzzing_dir: Path, fuzzer_name: str) -> int:
    """Executions recorded by the run script, 0 when unknown."""
    count_file = output_dir_for(fuzzing_dir, fuzzer_name) / TEST_COUNT_FILE
    try:
        text = count_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return 0
    except UnicodeDecodeError:
        logger.warning("Ignoring undecodable %s", count_file)
        return 0
    try:
        return max(int(text), 0)
    except ValueError:
        logger.warning("Ignoring malformed %s: %r", count_file, text)
        return 0


def clear_crash_files(fuzzing_dir: Path, fuzzer_name: str) -> int:
    """
    Delete recorded crashes of one fuzzer along with their backtraces and
    test count. Returns the number of crash files removed.

    Files that cannot be removed are logged and skipped.
    """
    output_dir = output_dir_for(fuzzing_dir, fuzzer_name)
    if not output_dir.is_dir():
        return 0

    removed = 0
    try:
        entries = sorted(output_dir.iterdir())
    except OSError as e:
        raise CrashDiscoveryError(f"Failed to scan {output_dir}: {e}") from e

    for path in entries:
        name = path.name
        is_crash = name.startswith(CRASH_PREFIX)
        generated = is_crash or name.startswith(BACKTRACE_PREFIX) or name == TEST_COUNT_FILE
        if not generated or not path.is_file():
            continue
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            continue
        if is_crash:
            removed += 1

    logger.info("Cleared %d crash file(s) for %s", removed, fuzzer_name)
    return removed
