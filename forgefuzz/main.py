from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import (
    ConfigError,
    FuzzCampaignConfig,
    RuntimeConfig,
    config_summary,
    load_campaign_config,
)
from .orchestration import InteractiveSession, RecoveryAction, SessionState, WorkflowOrchestrator
from .pipelines import (
    BacktraceError,
    BacktraceGenerator,
    CorpusReportError,
    CorpusReportGenerator,
    DiscoveryCache,
    DiscoveryError,
    WorkspaceCaches,
)
from .storage import CampaignStore
from .tools.crash_discovery import CrashDiscoveryError
from .tools.fuzzer_names import InvalidTargetError
from .tools.process_runner import ProcessSpawnError, container_ref_for

# Connection settings (tool command, docker binary, image) may come from a
# .env file in the working directory.
load_dotenv()

WORKSPACE_SETTINGS = ".forgefuzz.yaml"
DEFAULT_GLOBAL_SETTINGS = Path.home() / ".config" / "forgefuzz" / "settings.yaml"


class TerminalSink:
    """Writes streamed output straight to a text stream."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fuzz-testing campaign runner")

    parser.add_argument("--workspace", type=Path, help="Workspace root (default: cwd)")
    parser.add_argument("--container", help="Container image (default: derived from workspace)")
    parser.add_argument(
        "--settings",
        type=Path,
        default=DEFAULT_GLOBAL_SETTINGS,
        help="Global settings YAML; <workspace>/.forgefuzz.yaml overrides it",
    )
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Discover, build and run every fuzz target")
    run.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Attempts before giving up (default: runtime max_retry_attempts)",
    )
    run.add_argument(
        "--persist",
        action="store_true",
        help="Write a campaign report under the fuzzing output directory",
    )

    sub.add_parser("discover", help="List fuzz targets and their crashes")

    backtrace = sub.add_parser("backtrace", help="Generate a backtrace for one crash")
    backtrace.add_argument("fuzzer", help="Fuzzer name")
    backtrace.add_argument("crash_id", help="Crash id, e.g. crash-<hash>")

    crashes = sub.add_parser("crashes", help="List crashes reported by the build system")
    crashes.add_argument("fuzzer", nargs="?", help="Limit to one discovered fuzzer")

    clear = sub.add_parser("clear", help="Delete the recorded crashes of one fuzzer")
    clear.add_argument("fuzzer", help="Fuzzer name")

    corpus = sub.add_parser("corpus", help="Generate a corpus report for one fuzzer")
    corpus.add_argument("fuzzer", help="Fuzzer name")

    sub.add_parser("config", help="Show the effective fuzzing configuration")

    return parser.parse_args(argv)


def build_runtime(args: argparse.Namespace) -> RuntimeConfig:
    workspace = (args.workspace or Path.cwd()).resolve()
    runtime = RuntimeConfig(
        workspace_root=workspace,
        container_ref=args.container or os.getenv("FORGEFUZZ_CONTAINER") or None,
    )
    runtime.tool_command = os.getenv("FORGEFUZZ_TOOL_COMMAND", runtime.tool_command)
    runtime.docker_command = os.getenv("FORGEFUZZ_DOCKER", runtime.docker_command)
    return runtime


def _retry_prompt(error: Exception, attempt: int) -> RecoveryAction:
    if not sys.stdin.isatty():
        return RecoveryAction.CANCEL
    answer = input(f"Attempt {attempt} failed: {error}\nRetry? [y/N] ")
    return RecoveryAction.RETRY if answer.strip().lower() in ("y", "yes") else RecoveryAction.CANCEL


def _caches(runtime: RuntimeConfig, config: FuzzCampaignConfig) -> WorkspaceCaches:
    return WorkspaceCaches(lambda workspace: DiscoveryCache(runtime, config=config))


def _container_ref(runtime: RuntimeConfig) -> str:
    return runtime.container_ref or container_ref_for(runtime.workspace_root)


async def _run(
    args: argparse.Namespace, runtime: RuntimeConfig, config: FuzzCampaignConfig
) -> int:
    sink = TerminalSink()
    store = None
    if args.persist:
        store = CampaignStore(config.output_path(runtime.workspace_root) / "campaigns")
    if args.retries is not None:
        runtime.max_retry_attempts = args.retries
    orchestrator = WorkflowOrchestrator(
        runtime, config=config, store=store, caches=_caches(runtime, config)
    )

    session = InteractiveSession(orchestrator, sink, prompt=_retry_prompt)
    await session.open()
    failed = session.outcome is SessionState.COMPLETED_FAILURE
    # Non-interactive: the prompt has been printed, close right away.
    session.handle_input("")
    return 1 if failed else 0


async def _discover(runtime: RuntimeConfig, config: FuzzCampaignConfig) -> int:
    cache = _caches(runtime, config).for_workspace(runtime.workspace_root)
    states = await cache.discover(runtime.workspace_root, _container_ref(runtime))
    if not states:
        print("No fuzz targets found")
        return 1
    for state in states:
        print(
            f"{state.preset}:{state.name}  ({state.display_name})  "
            f"crashes={len(state.crashes)} tests={state.test_count}"
        )
        for crash in state.crashes:
            print(f"    {crash.crash_id}  {crash.discovered_at.isoformat()}")
    return 0


async def _crashes(
    args: argparse.Namespace, runtime: RuntimeConfig, config: FuzzCampaignConfig
) -> int:
    cache = _caches(runtime, config).for_workspace(runtime.workspace_root)
    container_ref = _container_ref(runtime)
    targets = []
    if args.fuzzer:
        state = cache.get(args.fuzzer)
        if state is None:
            await cache.discover(runtime.workspace_root, container_ref)
            state = cache.get(args.fuzzer)
        if state is None:
            print(f"Unknown fuzzer: {args.fuzzer}", file=sys.stderr)
            return 1
        targets.append(state.descriptor)

    entries = await cache.list_crashes(runtime.workspace_root, container_ref, targets)
    for fuzzer, crash_hash in entries:
        print(f"{fuzzer}/{crash_hash}")
    return 0


async def _clear(
    args: argparse.Namespace, runtime: RuntimeConfig, config: FuzzCampaignConfig
) -> int:
    cache = _caches(runtime, config).for_workspace(runtime.workspace_root)
    removed = await cache.clear_crashes(
        runtime.workspace_root, _container_ref(runtime), args.fuzzer
    )
    if removed:
        print(f"Cleared {removed} crash file(s) for {args.fuzzer}")
    else:
        print(f"No crashes found for {args.fuzzer}")
    return 0


async def _backtrace(
    args: argparse.Namespace, runtime: RuntimeConfig, config: FuzzCampaignConfig
) -> int:
    generator = BacktraceGenerator(runtime, config=config)
    result = await generator.generate_report(
        runtime.workspace_root, args.fuzzer, args.crash_id, _container_ref(runtime)
    )
    print(result.formatted_text)
    return 0


async def _corpus(
    args: argparse.Namespace, runtime: RuntimeConfig, config: FuzzCampaignConfig
) -> int:
    generator = CorpusReportGenerator(runtime, config=config)
    print(
        await generator.generate(runtime.workspace_root, args.fuzzer, _container_ref(runtime))
    )
    return 0


async def _async_main(args: argparse.Namespace) -> int:
    runtime = build_runtime(args)
    config = load_campaign_config(
        args.settings, runtime.workspace_root / WORKSPACE_SETTINGS
    )

    if args.command == "config":
        print(config_summary(config))
        return 0
    if args.command == "discover":
        return await _discover(runtime, config)
    if args.command == "crashes":
        return await _crashes(args, runtime, config)
    if args.command == "clear":
        return await _clear(args, runtime, config)
    if args.command == "backtrace":
        return await _backtrace(args, runtime, config)
    if args.command == "corpus":
        return await _corpus(args, runtime, config)
    return await _run(args, runtime, config)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_async_main(args))
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2
    except (
        BacktraceError,
        CorpusReportError,
        CrashDiscoveryError,
        DiscoveryError,
        InvalidTargetError,
        ProcessSpawnError,
    ) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
