"""Tests for the marker output parsers."""

from datetime import datetime, timezone
from pathlib import Path

from forgefuzz.storage.models import DiagnosticContext, FuzzTargetDescriptor
from forgefuzz.tools.output_parsers import (
    GENERIC_BUILD_ERROR,
    BuildOutputParser,
    CrashListParser,
    DiscoveryParser,
    RunOutputParser,
    fuzzer_from_crash_path,
    serialize_targets,
)

FIXED_TIME = datetime(2024, 12, 19, 15, 45, 23, tzinfo=timezone.utc)

TARGETS = [
    FuzzTargetDescriptor(preset="debug", fuzzer="fuzzA"),
    FuzzTargetDescriptor(preset="release", fuzzer="fuzzB"),
]


# ============================================================================
# Discovery
# ============================================================================


def test_discovery_parses_pairs_in_order():
    result = DiscoveryParser.parse("debug:fuzzA\nrelease:fuzzB\n")

    assert result.targets == TARGETS
    assert result.unparsed_lines == []


def test_discovery_trims_and_skips_blank_lines():
    result = DiscoveryParser.parse("\n  debug : fuzzA  \n\n")

    assert result.targets == [FuzzTargetDescriptor("debug", "fuzzA")]


def test_discovery_collapses_duplicates():
    result = DiscoveryParser.parse("debug:fuzzA\ndebug:fuzzA\nrelease:fuzzA\n")

    assert [t.token for t in result.targets] == ["debug:fuzzA", "release:fuzzA"]


def test_discovery_reports_unparsed_lines():
    stdout = "Scanning presets...\ndebug:\n:fuzzA\ndebug:bad name\ndebug:fuzzA\n"
    result = DiscoveryParser.parse(stdout)

    assert result.targets == [FuzzTargetDescriptor("debug", "fuzzA")]
    assert result.unparsed_lines == [
        "Scanning presets...",
        "debug:",
        ":fuzzA",
        "debug:bad name",
    ]


def test_discovery_splits_on_first_colon():
    result = DiscoveryParser.parse("debug:ns:fuzz\n")

    assert result.targets == [FuzzTargetDescriptor("debug", "ns:fuzz")]


def test_discovery_empty_output():
    result = DiscoveryParser.parse("")
    assert result.targets == []
    assert result.unparsed_lines == []


def test_serialize_targets():
    assert serialize_targets(TARGETS) == "debug:fuzzA release:fuzzB"


# ============================================================================
# Crash list
# ============================================================================


def test_crash_list_parser():
    result = CrashListParser.parse("fuzzA/abc123\nfuzzB/def456\nnot a crash line\n")

    assert result.entries == [("fuzzA", "abc123"), ("fuzzB", "def456")]
    assert result.unparsed_lines == ["not a crash line"]


# ============================================================================
# Build
# ============================================================================


def test_build_success_markers(tmp_path):
    stdout = (
        "[+] building target: fuzzA in preset: debug\n"
        "[+] built fuzzer: fuzzA\n"
        "[+] copying fuzzA to fuzzing directory\n"
        "[+] built fuzzer: fuzzB\n"
    )
    result = BuildOutputParser.parse(stdout, "", 0, TARGETS, tmp_path)

    assert result.built_count == 2
    assert [(t.name, t.preset) for t in result.built_targets] == [
        ("fuzzA", "debug"),
        ("fuzzB", "release"),
    ]
    assert result.built_targets[0].path == tmp_path / "fuzzA"
    assert result.failures == []
    assert result.unparsed_lines == []


def test_build_failure_takes_next_line_as_detail(tmp_path):
    stdout = (
        "[+] built fuzzer: fuzzA\n"
        "[!] Failed to build target fuzzB\n"
        "\n"
        "undefined reference to `missing_symbol'\n"
    )
    diagnostic = DiagnosticContext("cmd", 1, stdout, "", "now")
    result = BuildOutputParser.parse(stdout, "", 1, TARGETS, tmp_path, diagnostic)

    assert result.built_count == 1
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.target == "fuzzB"
    assert failure.preset == "release"
    assert failure.raw_error == "undefined reference to `missing_symbol'"
    assert failure.diagnostic_context is diagnostic


def test_build_failure_without_detail_uses_fallback(tmp_path):
    stdout = "[!] Failed to build target fuzzA\n[+] built fuzzer: fuzzB\n"
    result = BuildOutputParser.parse(stdout, "", 1, TARGETS, tmp_path)

    assert result.failures[0].raw_error == GENERIC_BUILD_ERROR
    assert [t.name for t in result.built_targets] == ["fuzzB"]


def test_build_failure_at_end_of_output(tmp_path):
    result = BuildOutputParser.parse("[!] Failed to build target fuzzA\n", "", 1, TARGETS, tmp_path)
    assert result.failures[0].raw_error == GENERIC_BUILD_ERROR


def test_build_synthetic_failure_from_stderr(tmp_path):
    result = BuildOutputParser.parse(
        "cmake noise\n", "CMake Error: preset not found\n", 2, TARGETS, tmp_path
    )

    assert result.built_count == 0
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.raw_error == "CMake Error: preset not found"
    assert failure.target == "fuzzA, fuzzB"
    assert failure.preset == "debug,release"


def test_build_progress_lines_do_not_hide_stderr_failure(tmp_path):
    # cp fails after the build step announced its target
    result = BuildOutputParser.parse(
        "[+] building target: fuzzA in preset: build-debug\n",
        "cp: cannot stat 'build/fuzzA': No such file or directory\n",
        1,
        TARGETS[:1],
        tmp_path,
    )

    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.target == "fuzzA"
    assert failure.preset == "debug"
    assert failure.raw_error.startswith("cp: cannot stat")


def test_build_no_synthetic_failure_on_success_exit(tmp_path):
    result = BuildOutputParser.parse("", "warning: something\n", 0, TARGETS, tmp_path)
    assert result.failures == []


def test_build_no_synthetic_failure_without_stderr(tmp_path):
    result = BuildOutputParser.parse("", "", 1, TARGETS, tmp_path)
    assert result.failures == []


def test_build_unknown_marker_is_unparsed(tmp_path):
    result = BuildOutputParser.parse("[+] something new\n[+] built fuzzer: fuzzA\n", "", 0, TARGETS, tmp_path)

    assert result.unparsed_lines == ["[+] something new"]
    assert result.built_count == 1


# ============================================================================
# Run
# ============================================================================


def test_run_attributes_crash_by_output_directory():
    stdout = (
        "[+] running fuzzer: /ws/.codeforge/fuzzing/fuzzA\n"
        "[+] Found crash file: /ws/.codeforge/fuzzing/fuzzA-output/crash-abc123\n"
        "[+] running fuzzer: /ws/.codeforge/fuzzing/fuzzB\n"
    )
    result = RunOutputParser.parse(stdout, "", 0, TARGETS, now=lambda: FIXED_TIME)

    assert result.executed_fuzzers == ["fuzzA", "fuzzB"]
    assert result.executed_count == 2
    assert len(result.crashes) == 1
    crash = result.crashes[0]
    assert crash.fuzzer_name == "fuzzA"
    assert crash.file_path == "/ws/.codeforge/fuzzing/fuzzA-output/crash-abc123"
    assert crash.relative_path == "crash-abc123"
    assert crash.crash_id == "crash-abc123"
    assert crash.crash_hash == "abc123"
    assert crash.discovered_at == FIXED_TIME
    assert result.execution_errors == []


def test_run_crash_without_output_segment_uses_current_fuzzer():
    stdout = (
        "[+] running fuzzer: fuzzB\n"
        "[+] Found crash file: crash-def456\n"
    )
    result = RunOutputParser.parse(stdout, "", 0, TARGETS)

    assert result.crashes[0].fuzzer_name == "fuzzB"
    assert result.crashes[0].relative_path == "crash-def456"


def test_run_relative_crash_resolved_against_fuzzing_dir(tmp_path):
    stdout = "[+] Found crash file: fuzzA-output/crash-abc\n"
    result = RunOutputParser.parse(stdout, "", 0, TARGETS, fuzzing_dir=tmp_path)

    assert result.crashes[0].file_path == str(tmp_path / "fuzzA-output" / "crash-abc")


def test_run_duplicate_crash_reports_collapse():
    line = "[+] Found crash file: /f/fuzzA-output/crash-1\n"
    result = RunOutputParser.parse(line + line, "", 0, TARGETS)
    assert len(result.crashes) == 1


def test_run_fuzzer_errors():
    stdout = (
        "[+] running fuzzer: /f/fuzzA\n"
        "[+] fuzzer /f/fuzzA encountered errors!\n"
        "==1==ERROR: libFuzzer: out-of-memory\n"
        "[+] running fuzzer: /f/fuzzB\n"
        "[+] fuzzer /f/fuzzB encountered errors!\n"
    )
    result = RunOutputParser.parse(stdout, "", 1, TARGETS)

    assert [(e.fuzzer, e.message) for e in result.execution_errors] == [
        ("fuzzA", "==1==ERROR: libFuzzer: out-of-memory"),
        ("fuzzB", "Fuzzer fuzzB encountered errors"),
    ]
    assert result.executed_fuzzers == ["fuzzA", "fuzzB"]


def test_run_generic_error_from_stderr():
    result = RunOutputParser.parse("", "docker: image not found\n", 125, TARGETS)

    assert len(result.execution_errors) == 1
    error = result.execution_errors[0]
    assert error.fuzzer == "fuzzA, fuzzB"
    assert error.message == "docker: image not found"


def test_run_generic_error_from_exit_code():
    result = RunOutputParser.parse("", "", 3, TARGETS)
    assert result.execution_errors[0].message == "Process exited with code 3"


def test_run_clean_exit_has_no_errors():
    result = RunOutputParser.parse("[+] Running fuzzers\n", "", 0, TARGETS)

    assert result.execution_errors == []
    assert result.unparsed_lines == []


def test_fuzzer_from_crash_path():
    assert fuzzer_from_crash_path("/a/fuzzX-output/corpus/crash-1") == ("fuzzX", "corpus/crash-1")
    assert fuzzer_from_crash_path("/a/-output/crash-1") == (None, "/a/-output/crash-1")
    assert fuzzer_from_crash_path(str(Path("crash-1"))) == (None, "crash-1")
