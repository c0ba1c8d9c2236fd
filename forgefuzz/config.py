from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml


class ConfigError(ValueError):
    """Raised when campaign settings fail validation.

    All violations found in one pass are collected in ``violations``.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__(
            "Invalid fuzzing configuration:\n" + "\n".join(self.violations)
        )


# (min, max) per numeric field; None means unbounded on that side.
VALIDATION_RULES: dict[str, tuple[Optional[int], Optional[int]]] = {
    "runs_per_worker": (1, 1000),
    "parallel_jobs": (1, 64),
    "max_total_time_seconds": (0, None),
    "max_input_len": (1, 1_048_576),
    "memory_limit_mb": (128, 16_384),
    "per_run_timeout_seconds": (1, 300),
}

BOOLEAN_FIELDS = (
    "ignore_crashes",
    "exit_on_first_crash",
    "minimize_crashes",
    "preserve_corpus",
)


@dataclass(frozen=True)
class FuzzCampaignConfig:
    """Validated parameters for one fuzzing campaign."""

    runs_per_worker: int = 16
    parallel_jobs: int = 8
    max_total_time_seconds: int = 300  # 0 = unlimited
    max_input_len: int = 4096
    ignore_crashes: bool = True
    exit_on_first_crash: bool = False
    minimize_crashes: bool = True
    memory_limit_mb: int = 2048
    per_run_timeout_seconds: int = 25
    output_directory: str = ".codeforge/fuzzing"
    preserve_corpus: bool = True

    def output_path(self, workspace: Path) -> Path:
        return Path(workspace) / self.output_directory


@dataclass()
class RuntimeConfig:
    """Engine knobs that are not part of a campaign."""

    workspace_root: Path = field(default_factory=Path.cwd)
    container_ref: Optional[str] = None  # derived from workspace when unset
    tool_command: str = "codeforge"
    docker_command: str = "docker"
    shell: str = "/bin/bash"
    cache_ttl_seconds: float = 30.0
    max_retry_attempts: int = 3
    extra_env: dict[str, str] = field(default_factory=dict)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _describe_range(name: str, low: Optional[int], high: Optional[int]) -> str:
    if high is None:
        return f"{name} must be >= {low}"
    return f"{name} must be between {low} and {high}"


def normalize(raw_settings: Optional[Mapping[str, Any]]) -> FuzzCampaignConfig:
    """Apply defaults to ``raw_settings`` and validate the result.

    Raises ConfigError listing every violation at once.
    """
    raw = dict(raw_settings or {})
    defaults = FuzzCampaignConfig()
    known = {f.name for f in fields(FuzzCampaignConfig)}
    merged = {name: raw.get(name, getattr(defaults, name)) for name in known}

    errors: list[str] = []

    for name, (low, high) in VALIDATION_RULES.items():
        value = merged[name]
        in_range = (
            _is_number(value)
            and (low is None or value >= low)
            and (high is None or value <= high)
        )
        if not in_range:
            errors.append(f"{_describe_range(name, low, high)}, got: {value!r}")

    for name in BOOLEAN_FIELDS:
        value = merged[name]
        if not isinstance(value, bool):
            errors.append(f"{name} must be a boolean, got: {type(value).__name__}")

    output_directory = merged["output_directory"]
    if not isinstance(output_directory, str) or not output_directory.strip():
        errors.append(
            f"output_directory must be a non-empty string, got: {output_directory!r}"
        )

    if merged["ignore_crashes"] is True and merged["exit_on_first_crash"] is True:
        errors.append(
            "Cannot have both ignore_crashes and exit_on_first_crash enabled simultaneously"
        )

    if errors:
        raise ConfigError(errors)

    return FuzzCampaignConfig(**merged)


def engine_options(config: FuzzCampaignConfig) -> dict[str, int]:
    """Translate a campaign config into fuzzing-engine option values.

    An unlimited total time is omitted: the engine treats an explicit 0
    differently from an unset value.
    """
    options: dict[str, int] = {
        "fork": 1,
        "ignore_crashes": int(config.ignore_crashes),
        "exit_on_first_crash": int(config.exit_on_first_crash),
        "jobs": config.parallel_jobs,
        "runs": config.runs_per_worker,
        "create_missing_dirs": 1,
        "max_len": config.max_input_len,
        "timeout": config.per_run_timeout_seconds,
        "rss_limit_mb": config.memory_limit_mb,
    }
    if config.max_total_time_seconds > 0:
        options["max_total_time"] = config.max_total_time_seconds
    return options


def engine_arguments(config: FuzzCampaignConfig) -> list[str]:
    return [f"-{key}={value}" for key, value in engine_options(config).items()]


def config_summary(config: FuzzCampaignConfig) -> str:
    return (
        "Fuzzing Configuration:\n"
        f"  LibFuzzer: {config.runs_per_worker} runs, {config.parallel_jobs} jobs, "
        f"{config.max_total_time_seconds}s max time, {config.max_input_len} max length\n"
        f"  Crashes: ignore={config.ignore_crashes}, exit={config.exit_on_first_crash}, "
        f"minimize={config.minimize_crashes}\n"
        f"  Resources: {config.memory_limit_mb}MB memory, "
        f"{config.per_run_timeout_seconds}s timeout\n"
        f"  Output: {config.output_directory}, preserve corpus={config.preserve_corpus}"
    )


# ============================================================================
# Layered settings
# ============================================================================


def _read_fuzzing_section(path: Optional[Path]) -> dict[str, Any]:
    if path is None or not Path(path).exists():
        return {}
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError([f"Could not parse settings file {path}: {e}"]) from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError([f"Settings file {path} must contain a mapping"])

    section = document.get("fuzzing", {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError([f"'fuzzing' in {path} must be a mapping"])
    return section


def load_settings(
    global_path: Optional[Path] = None,
    workspace_path: Optional[Path] = None,
) -> dict[str, Any]:
    """Merge the ``fuzzing`` sections of two YAML files, workspace winning."""
    merged = _read_fuzzing_section(global_path)
    merged.update(_read_fuzzing_section(workspace_path))
    return merged


def load_campaign_config(
    global_path: Optional[Path] = None,
    workspace_path: Optional[Path] = None,
) -> FuzzCampaignConfig:
    return normalize(load_settings(global_path, workspace_path))
