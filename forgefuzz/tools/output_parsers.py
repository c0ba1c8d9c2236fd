"""
Parsers for the line-oriented marker output of the fuzzing scripts.

Every parser is total and side-effect free. Lines that look like protocol
markers but match nothing known are returned in ``unparsed_lines`` so drift in
the external scripts shows up instead of disappearing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Callable, Iterable, Optional, Sequence

from ..storage.models import (
    BuildFailure,
    BuildResult,
    BuiltTarget,
    CrashRecord,
    DiagnosticContext,
    ExecutionError,
    FuzzTargetDescriptor,
    RunResult,
)
from .fuzzer_names import validate_fuzzer_name

OUTPUT_DIR_SUFFIX = "-output"
GENERIC_BUILD_ERROR = "Build failed without diagnostic output"

# Build script markers
BUILT_FUZZER_RE = re.compile(r"^\[\+\] built fuzzer:\s*(?P<name>\S+)\s*$")
BUILD_FAILED_RE = re.compile(r"^\[!\] Failed to build target\s+(?P<name>\S+)\s*$")
BUILD_INFO_RES = (
    re.compile(r"^\[\+\] building target:"),
    re.compile(r"^\[\+\] copying "),
)

# Run script markers
RUNNING_FUZZER_RE = re.compile(r"^\[\+\] running fuzzer:\s*(?P<path>.+?)\s*$")
CRASH_FILE_RE = re.compile(r"^\[\+\] Found crash file:\s*(?P<path>.+?)\s*$")
FUZZER_ERRORS_RE = re.compile(r"^\[\+\] fuzzer\s+(?P<path>.+?)\s+encountered errors!\s*$")
RUN_INFO_RES = (
    re.compile(r"^\[\+\] Building fuzzers"),
    re.compile(r"^\[\+\] Running fuzzers"),
    re.compile(r"^\[\+\] Contents of crash file:"),
    re.compile(r"^\[!\] Failed to build fuzz tests"),
)

MARKER_PREFIX_RE = re.compile(r"^\[[+!]\]")

CRASH_LIST_RE = re.compile(r"^(?P<fuzzer>[^/\s]+)/(?P<hash>[^/\s]+)$")


def _lines(text: str) -> list[str]:
    return text.splitlines() if text else []


def _is_marker(line: str) -> bool:
    return bool(MARKER_PREFIX_RE.match(line.strip()))


def _path_segments(path: str) -> list[str]:
    return [segment for segment in re.split(r"[\\/]+", path) if segment]


def _final_segment(path: str) -> str:
    segments = _path_segments(path)
    return segments[-1] if segments else path


def _next_detail(lines: Sequence[str], start: int) -> tuple[Optional[str], int]:
    """Return the first non-empty, non-marker line at or after ``start``."""
    for index in range(start, len(lines)):
        candidate = lines[index].strip()
        if not candidate:
            continue
        if _is_marker(candidate):
            return None, index
        return candidate, index + 1
    return None, len(lines)


# ============================================================================
# Discovery
# ============================================================================


@dataclass()
class DiscoveryParseResult:
    targets: list[FuzzTargetDescriptor] = field(default_factory=list)
    unparsed_lines: list[str] = field(default_factory=list)


class DiscoveryParser:
    """Parses ``PRESET:FUZZER`` lines from ``find-fuzz-tests -q``."""

    @staticmethod
    def parse(stdout: str) -> DiscoveryParseResult:
        result = DiscoveryParseResult()
        seen: set[tuple[str, str]] = set()

        for raw_line in _lines(stdout):
            line = raw_line.strip()
            if not line:
                continue
            preset, sep, fuzzer = line.partition(":")
            preset, fuzzer = preset.strip(), fuzzer.strip()
            if not sep or not preset or not fuzzer:
                result.unparsed_lines.append(line)
                continue
            if validate_fuzzer_name(fuzzer) or validate_fuzzer_name(preset):
                result.unparsed_lines.append(line)
                continue
            key = (preset, fuzzer)
            if key in seen:
                continue
            seen.add(key)
            result.targets.append(FuzzTargetDescriptor(preset=preset, fuzzer=fuzzer))

        return result


@dataclass()
class CrashListParseResult:
    entries: list[tuple[str, str]] = field(default_factory=list)
    unparsed_lines: list[str] = field(default_factory=list)


class CrashListParser:
    """Parses ``FUZZER/HASH`` lines from ``find-crashes``."""

    @staticmethod
    def parse(stdout: str) -> CrashListParseResult:
        result = CrashListParseResult()
        for raw_line in _lines(stdout):
            line = raw_line.strip()
            if not line:
                continue
            match = CRASH_LIST_RE.match(line)
            if match:
                result.entries.append((match.group("fuzzer"), match.group("hash")))
            else:
                result.unparsed_lines.append(line)
        return result


# ============================================================================
# Build
# ============================================================================


class BuildOutputParser:
    """Parses ``build-fuzz-tests`` output into a BuildResult."""

    @staticmethod
    def parse(
        stdout: str,
        stderr: str,
        exit_code: Optional[int],
        requested: Sequence[FuzzTargetDescriptor],
        fuzzing_dir: Path,
        diagnostic: Optional[DiagnosticContext] = None,
    ) -> BuildResult:
        presets = {t.fuzzer: t.preset for t in requested}
        result = BuildResult()
        markers_found = False
        built_names: set[str] = set()

        lines = _lines(stdout)
        index = 0
        while index < len(lines):
            line = lines[index].strip()
            index += 1
            if not line:
                continue

            built = BUILT_FUZZER_RE.match(line)
            if built:
                markers_found = True
                name = built.group("name")
                if name not in built_names:
                    built_names.add(name)
                    result.built_targets.append(
                        BuiltTarget(
                            name=name,
                            preset=presets.get(name, ""),
                            path=fuzzing_dir / name,
                        )
                    )
                continue

            failed = BUILD_FAILED_RE.match(line)
            if failed:
                markers_found = True
                name = failed.group("name")
                detail, index = _next_detail(lines, index)
                result.failures.append(
                    BuildFailure(
                        preset=presets.get(name, ""),
                        target=name,
                        raw_error=detail or GENERIC_BUILD_ERROR,
                        diagnostic_context=diagnostic,
                    )
                )
                continue

            # progress lines only; they say nothing about the outcome
            if any(info.match(line) for info in BUILD_INFO_RES):
                continue

            if _is_marker(line):
                result.unparsed_lines.append(line)

        if not markers_found and exit_code not in (0, None) and stderr.strip():
            result.failures.append(
                BuildFailure(
                    preset=",".join(sorted({t.preset for t in requested})),
                    target=", ".join(t.fuzzer for t in requested),
                    raw_error=stderr.strip(),
                    diagnostic_context=diagnostic,
                )
            )

        return result


# ============================================================================
# Run
# ============================================================================


def fuzzer_from_crash_path(path: str) -> tuple[Optional[str], str]:
    """
    Recover the owning fuzzer from a crash file path.

    Looks for the last ``<fuzzer>-output`` segment. Returns the fuzzer name (or
    None) and the path relative to that directory (or the path unchanged).
    """
    segments = _path_segments(path)
    for index in range(len(segments) - 1, -1, -1):
        segment = segments[index]
        if segment.endswith(OUTPUT_DIR_SUFFIX) and len(segment) > len(OUTPUT_DIR_SUFFIX):
            relative = "/".join(segments[index + 1:])
            return segment[: -len(OUTPUT_DIR_SUFFIX)], relative or path
    return None, path


class RunOutputParser:
    """Parses ``run-fuzz-tests`` output into a RunResult."""

    @staticmethod
    def parse(
        stdout: str,
        stderr: str,
        exit_code: Optional[int],
        requested: Sequence[FuzzTargetDescriptor] = (),
        fuzzing_dir: Optional[Path] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> RunResult:
        result = RunResult()
        current_fuzzer: Optional[str] = None
        seen_crashes: set[str] = set()

        lines = _lines(stdout)
        index = 0
        while index < len(lines):
            line = lines[index].strip()
            index += 1
            if not line:
                continue

            running = RUNNING_FUZZER_RE.match(line)
            if running:
                current_fuzzer = _final_segment(running.group("path"))
                result.executed_fuzzers.append(current_fuzzer)
                continue

            crash = CRASH_FILE_RE.match(line)
            if crash:
                reported = crash.group("path")
                owner, relative = fuzzer_from_crash_path(reported)
                owner = owner or current_fuzzer or "unknown"
                file_path = reported
                if fuzzing_dir is not None and not PurePath(reported).is_absolute():
                    file_path = str(fuzzing_dir / f"{owner}{OUTPUT_DIR_SUFFIX}" / relative)
                if file_path in seen_crashes:
                    continue
                seen_crashes.add(file_path)
                result.crashes.append(
                    CrashRecord(
                        fuzzer_name=owner,
                        file_path=file_path,
                        relative_path=relative,
                        discovered_at=now(),
                    )
                )
                continue

            errors = FUZZER_ERRORS_RE.match(line)
            if errors:
                name = _final_segment(errors.group("path"))
                detail, index = _next_detail(lines, index)
                result.execution_errors.append(
                    ExecutionError(
                        fuzzer=name,
                        message=detail or f"Fuzzer {name} encountered errors",
                    )
                )
                continue

            if any(info.match(line) for info in RUN_INFO_RES):
                continue

            if _is_marker(line):
                result.unparsed_lines.append(line)

        if not result.execution_errors and exit_code not in (0, None):
            subject = ", ".join(t.fuzzer for t in requested) or "run-fuzz-tests"
            result.execution_errors.append(
                ExecutionError(
                    fuzzer=subject,
                    message=stderr.strip() or f"Process exited with code {exit_code}",
                )
            )

        return result


def serialize_targets(targets: Iterable[FuzzTargetDescriptor]) -> str:
    return " ".join(t.token for t in targets)
