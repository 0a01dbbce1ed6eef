#!/usr/bin/env python3
"""Operator CLI for inventory analysis runs.

Examples:
  python backend/scripts/inventory_review.py latest 550e8400-e29b-41d4-a716-446655440001
  python backend/scripts/inventory_review.py watch --session sess-42 --max-seconds 300
  python backend/scripts/inventory_review.py approve --container 550e8400-e29b-41d4-a716-446655440001
  python backend/scripts/inventory_review.py override --session sess-42 \
      --correction "Coca-Cola:3:4" --correction "Sprite:0:2:added" --notes "Recounted shelf"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

import structlog

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.errors import InventoryApiError
from integrations.orchestrator import OrchestratorClient
from inventory.audit import derive_timeline_steps, project_audit_trail
from inventory.delta import net_change, normalize_delta
from inventory.fetcher import AnalysisFetcher, FetchFailed, FetchResult, ObservedTarget, RunFound, RunNotFound
from inventory.poller import AnalysisView, LifecyclePoller, PollPhase
from inventory.review import ReviewApplied, ReviewConflicted, ReviewSubmitter
from inventory.scheduling import AsyncioScheduler
from inventory.schemas import AnalysisStatus, InventoryAnalysisRun, ReviewAction
from inventory.selection import ActiveContainerStore

CORRECTION_FLAGS = {"added", "removed"}


def parse_correction(raw: str) -> dict[str, Any]:
    """NAME:ORIGINAL:CORRECTED[:added|removed] -> correction payload."""
    parts = raw.rsplit(":", 3)
    if len(parts) == 4 and parts[3] not in CORRECTION_FLAGS:
        parts = [":".join(parts[:2]), parts[2], parts[3]]
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(f"expected NAME:ORIGINAL:CORRECTED[:added|removed], got {raw!r}")
    name, original, corrected = parts[0], parts[1], parts[2]
    try:
        correction: dict[str, Any] = {
            "name": name,
            "original_count": int(original),
            "corrected_count": int(corrected),
        }
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"counts must be integers in {raw!r}") from exc
    if len(parts) == 4:
        correction[parts[3]] = True
    return correction


def _run_summary(run: InventoryAnalysisRun) -> dict[str, Any]:
    entries = normalize_delta(run.delta)
    trail = project_audit_trail(run.review)
    return {
        "run_id": run.run_id,
        "session_id": run.session_id,
        "container_id": run.container_id,
        "status": run.status.value,
        "entries": [entry.model_dump(mode="json", exclude_none=True) for entry in entries],
        "net_change": net_change(entries),
        "timeline": [{"label": step.label, "status": step.status} for step in derive_timeline_steps(run)],
        "audit": trail.to_dict() if trail else None,
        "error_message": run.metadata.error_message,
    }


def _fetch_summary(result: FetchResult) -> tuple[int, dict[str, Any]]:
    if isinstance(result, RunFound):
        return 0, {"status": "success", "run": _run_summary(result.run)}
    if isinstance(result, RunNotFound):
        return 0, {"status": "not_found", "target": {"kind": result.target.kind, "id": result.target.id}}
    return 1, {"status": "failed", "error": result.error.to_dict()}


def _view_summary(view: AnalysisView) -> dict[str, Any]:
    return {
        "phase": view.phase.value,
        "run_id": view.run.run_id if view.run else None,
        "entries": len(view.entries),
        "not_found": view.not_found,
        "error": view.error.to_dict() if view.error else None,
    }


def _target_from(args: argparse.Namespace, store: ActiveContainerStore | None = None) -> ObservedTarget | None:
    if getattr(args, "session", None):
        return ObservedTarget.session(args.session)
    if getattr(args, "container", None):
        return ObservedTarget.container(args.container)
    if store is not None and store.active_container_id:
        return ObservedTarget.container(store.active_container_id)
    return None


async def _watch(fetcher: AnalysisFetcher, target: ObservedTarget, max_seconds: float) -> tuple[int, dict]:
    def on_change(view: AnalysisView) -> None:
        if view.phase != PollPhase.IDLE:
            print(json.dumps(_view_summary(view)), flush=True)

    poller = LifecyclePoller(fetcher, AsyncioScheduler(), on_change=on_change)
    poller.observe(target)

    async def _settled() -> None:
        while poller.view.phase == PollPhase.IDLE or poller.is_polling or poller.in_flight:
            await asyncio.sleep(0.2)

    try:
        await asyncio.wait_for(_settled(), timeout=max_seconds)
    except asyncio.TimeoutError:
        poller.stop()
        return 1, {"status": "timeout", "view": _view_summary(poller.view)}
    view = poller.view
    code = 1 if view.needs_manual_refresh else 0
    return code, {"status": "settled", "view": _view_summary(view)}


async def run_command(args: argparse.Namespace, client: OrchestratorClient) -> tuple[int, dict[str, Any]]:
    fetcher = AnalysisFetcher(client)
    settings = get_settings()
    store = ActiveContainerStore(persist_path=settings.selection_state_path or None)

    if args.command == "latest":
        return _fetch_summary(await fetcher.fetch_latest(args.container_id))

    if args.command == "session":
        return _fetch_summary(await fetcher.lookup_session(args.session_id))

    if args.command == "runs":
        status = AnalysisStatus(args.status) if args.status else None
        result = await fetcher.fetch_runs(args.container_id, limit=args.limit, offset=args.offset, status=status)
        if isinstance(result, FetchFailed):
            return 1, {"status": "failed", "error": result.error.to_dict()}
        if isinstance(result, RunNotFound):
            return 0, {"status": "not_found", "container_id": args.container_id}
        return 0, {
            "status": "success",
            "runs": [run.model_dump(mode="json") for run in result.runs],
            "pagination": result.pagination.model_dump(),
        }

    if args.command == "select":
        if args.clear:
            store.clear()
        elif args.container_id:
            store.set_active(args.container_id)
        return 0, {"status": "success", "active_container_id": store.active_container_id}

    if args.command == "rerun":
        try:
            rerun = await client.rerun_analysis(args.run_id)
        except InventoryApiError as exc:
            return 1, {"status": "failed", "error": exc.to_dict()}
        return 0, {"status": "success", "supported": rerun.supported, "new_run_id": rerun.new_run_id}

    target = _target_from(args, store)
    if target is None:
        return 2, {"status": "failed", "error": "pass --container or --session, or select a container first"}

    if args.command == "watch":
        return await _watch(fetcher, target, args.max_seconds)

    found = await fetcher.fetch(target)
    if not isinstance(found, RunFound):
        return 1, _fetch_summary(found)[1] | {"status": "failed"}

    submitter = ReviewSubmitter(client, fetcher=fetcher)
    if args.command == "approve":
        outcome = await submitter.submit(found.run, ReviewAction.APPROVE, (), args.notes)
    else:
        outcome = await submitter.submit(found.run, ReviewAction.OVERRIDE, args.correction, args.notes)

    if isinstance(outcome, ReviewApplied):
        return 0, {"status": "success", "run": _run_summary(outcome.run)}
    if isinstance(outcome, ReviewConflicted):
        current = _run_summary(outcome.current_run) if outcome.current_run else None
        return 1, {"status": "conflict", "error": outcome.error.to_dict(), "current_run": current}
    return 1, {"status": "failed", "error": outcome.error.to_dict()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and review inventory analysis runs")
    parser.add_argument("--base-url", default=None, help="Orchestrator base URL (default: from settings)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    sub = parser.add_subparsers(dest="command", required=True)

    latest = sub.add_parser("latest", help="Latest analysis for a container")
    latest.add_argument("container_id")

    session = sub.add_parser("session", help="Analysis for a session")
    session.add_argument("session_id")

    runs = sub.add_parser("runs", help="List analysis runs for a container")
    runs.add_argument("container_id")
    runs.add_argument("--limit", type=int, default=20)
    runs.add_argument("--offset", type=int, default=0)
    runs.add_argument("--status", choices=[status.value for status in AnalysisStatus], default=None)

    select = sub.add_parser("select", help="Set or clear the active container")
    select.add_argument("container_id", nargs="?")
    select.add_argument("--clear", action="store_true")

    rerun = sub.add_parser("rerun", help="Request a re-run of an errored analysis")
    rerun.add_argument("run_id")

    for name, help_text in (
        ("watch", "Poll a run until it settles"),
        ("approve", "Approve the run as-is"),
        ("override", "Submit corrected counts"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        group = cmd.add_mutually_exclusive_group()
        group.add_argument("--container", default=None)
        group.add_argument("--session", default=None)
        if name == "watch":
            cmd.add_argument("--max-seconds", type=float, default=600.0)
        else:
            cmd.add_argument("--notes", default=None)
        if name == "override":
            cmd.add_argument(
                "--correction",
                type=parse_correction,
                action="append",
                required=True,
                help="NAME:ORIGINAL:CORRECTED[:added|removed], repeatable",
            )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    # stdout carries the JSON summary; logs go to stderr.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))
    try:
        client = OrchestratorClient(args.base_url)
        code, summary = asyncio.run(run_command(args, client))
    except Exception as exc:  # noqa: BLE001
        code, summary = 1, {"status": "failed", "error": str(exc)}

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(summary, default=str))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
