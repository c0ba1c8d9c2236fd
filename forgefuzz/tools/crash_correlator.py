"""
Crash correlation for repeated scans.

Groups crash records by owning fuzzer, drops duplicates reported by more than
one scan (same file path) and keeps each group ordered newest first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..storage.models import CrashRecord


@dataclass()
class CrashBucket:
    """All known crashes of one fuzzer."""

    fuzzer_name: str
    crashes: list[CrashRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.crashes)

    @property
    def newest(self) -> CrashRecord | None:
        return self.crashes[0] if self.crashes else None


def _newest_first(records: Iterable[CrashRecord]) -> list[CrashRecord]:
    unique: dict[str, CrashRecord] = {}
    for record in records:
        current = unique.get(record.file_path)
        if current is None or record.discovered_at > current.discovered_at:
            unique[record.file_path] = record
    return sorted(unique.values(), key=lambda r: r.discovered_at, reverse=True)


class CrashCorrelator:
    """Associates crash records with fuzzers by exact name."""

    def bucket(self, records: Iterable[CrashRecord]) -> dict[str, CrashBucket]:
        grouped: dict[str, list[CrashRecord]] = {}
        for record in records:
            grouped.setdefault(record.fuzzer_name, []).append(record)
        return {
            name: CrashBucket(fuzzer_name=name, crashes=_newest_first(crashes))
            for name, crashes in grouped.items()
        }

    def crashes_for(self, name: str, records: Iterable[CrashRecord]) -> list[CrashRecord]:
        return _newest_first(r for r in records if r.fuzzer_name == name)

    def merge(
        self,
        existing: Sequence[CrashRecord],
        incoming: Iterable[CrashRecord],
    ) -> list[CrashRecord]:
        """
        Fold ``incoming`` into ``existing``.

        A path seen in both keeps whichever record is newer.
        """
        return _newest_first([*existing, *incoming])
