from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import CampaignReport, CrashRecord, RunContext


def _crash_payload(crash: CrashRecord) -> dict[str, Any]:
    return {
        "fuzzer_name": crash.fuzzer_name,
        "crash_id": crash.crash_id,
        "file_path": crash.file_path,
        "relative_path": crash.relative_path,
        "file_size": crash.file_size,
        "discovered_at": crash.discovered_at.isoformat(),
    }


class CampaignStore:
    """Filesystem-backed persistence for campaign runs."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def allocate_run_context(self, project: str) -> RunContext:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        run_root = self.root / "runs" / timestamp
        logs = run_root / "logs"
        artifacts = run_root / "artifacts"
        logs.mkdir(parents=True, exist_ok=True)
        artifacts.mkdir(parents=True, exist_ok=True)
        return RunContext(
            project=project,
            run_id=timestamp,
            root=run_root,
            logs_dir=logs,
            artifacts_dir=artifacts,
        )

    def log_event(self, ctx: RunContext, message: str) -> None:
        log_file = ctx.logs_dir / "run.log"
        with log_file.open("a", encoding="utf-8") as fp:
            fp.write(
                f"{datetime.now(timezone.utc).isoformat()} "
                f"[{ctx.project}/{ctx.run_id}] {message}\n"
            )

    def log_tool_call(
        self,
        ctx: RunContext,
        tool: str,
        action: str,
        detail: dict[str, Any],
    ) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "project": ctx.project,
            "run_id": ctx.run_id,
            "tool": tool,
            "action": action,
            "detail": detail,
        }
        log_file = ctx.logs_dir / "tool_calls.jsonl"
        with log_file.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(entry) + "\n")

    def persist_report(self, ctx: RunContext, report: CampaignReport) -> Path:
        out_file = ctx.artifacts_dir / "campaign_report.json"
        payload: dict[str, Any] = {
            "project": ctx.project,
            "run_id": ctx.run_id,
            "workspace": report.workspace,
            "stage": report.stage.value,
            "started_at": report.started_at,
            "finished_at": report.finished_at,
            "discovered_targets": [t.token for t in report.discovered_targets],
            "built_targets": [
                {"name": t.name, "preset": t.preset, "path": str(t.path)}
                for t in report.built_targets
            ],
            "build_failures": [
                {
                    "preset": f.preset,
                    "target": f.target,
                    "raw_error": f.raw_error,
                    "exit_code": (
                        f.diagnostic_context.exit_code
                        if f.diagnostic_context
                        else None
                    ),
                }
                for f in report.build_failures
            ],
            "executed_fuzzers": list(report.executed_fuzzers),
            "crashes": [_crash_payload(c) for c in report.crashes],
            "errors": [
                {"kind": e.kind, "subject": e.subject, "message": e.message}
                for e in report.errors
            ],
            "summary": report.summary,
        }
        with out_file.open("w", encoding="utf-8") as fp:
            json.dump(payload, fp, indent=2)
        return out_file
