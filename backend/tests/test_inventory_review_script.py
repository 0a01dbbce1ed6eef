import argparse
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import CONTAINER_ID, RUN_ID, SESSION_ID, make_run
from core import config as config_module
from scripts.inventory_review import build_parser, parse_correction, run_command


@pytest.fixture(autouse=True)
def _in_memory_selection(monkeypatch):
    monkeypatch.setenv("SELECTION_STATE_PATH", "")
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


class TestParseCorrection:
    def test_adjusted_count(self):
        assert parse_correction("Coca-Cola:3:4") == {"name": "Coca-Cola", "original_count": 3, "corrected_count": 4}

    def test_flagged_correction(self):
        assert parse_correction("Sprite:0:2:added") == {
            "name": "Sprite",
            "original_count": 0,
            "corrected_count": 2,
            "added": True,
        }

    def test_name_may_contain_colons(self):
        assert parse_correction("Soda: Diet:1:0:removed")["name"] == "Soda: Diet"
        assert parse_correction("Soda: Diet:1:2")["name"] == "Soda: Diet"

    @pytest.mark.parametrize("raw", ["Coca-Cola", "Coca-Cola:3", "Coca-Cola:three:4"])
    def test_malformed_input_rejected(self, raw):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_correction(raw)


def test_override_requires_correction_flag():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["override", "--container", CONTAINER_ID])


def test_container_and_session_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["approve", "--container", CONTAINER_ID, "--session", SESSION_ID])


@pytest.mark.asyncio
async def test_latest_summarizes_run(orchestrator, api_client):
    orchestrator.add_run(make_run())
    code, summary = await run_command(build_parser().parse_args(["latest", CONTAINER_ID]), api_client)
    assert code == 0
    assert summary["status"] == "success"
    assert summary["run"]["net_change"] == -2
    assert summary["run"]["audit"] is None


@pytest.mark.asyncio
async def test_missing_analysis_is_not_a_failure(api_client):
    code, summary = await run_command(build_parser().parse_args(["session", SESSION_ID]), api_client)
    assert code == 0
    assert summary["status"] == "not_found"


@pytest.mark.asyncio
async def test_override_submits_review(orchestrator, api_client):
    orchestrator.add_run(make_run(status="needs_review"))
    args = build_parser().parse_args(
        ["override", "--session", SESSION_ID, "--correction", "Coca-Cola:3:4", "--notes", "Recounted"]
    )
    code, summary = await run_command(args, api_client)
    assert code == 0
    assert summary["run"]["audit"]["action_label"] == "Corrected"
    assert orchestrator.runs[RUN_ID]["review"]["corrections"][0]["corrected_count"] == 4


@pytest.mark.asyncio
async def test_second_approve_reports_conflict(orchestrator, api_client):
    orchestrator.add_run(make_run(status="needs_review"))
    args = build_parser().parse_args(["approve", "--container", CONTAINER_ID])
    assert (await run_command(args, api_client))[0] == 0

    code, summary = await run_command(args, api_client)
    assert code == 1
    assert summary["status"] == "conflict"
    assert summary["current_run"]["audit"]["annotation"] == "Approved as-is, no corrections made"


@pytest.mark.asyncio
async def test_review_without_target_is_a_usage_error(api_client):
    code, summary = await run_command(build_parser().parse_args(["approve"]), api_client)
    assert code == 2
    assert summary["status"] == "failed"


@pytest.mark.asyncio
async def test_runs_lists_page(orchestrator, api_client):
    orchestrator.add_run(make_run())
    code, summary = await run_command(build_parser().parse_args(["runs", CONTAINER_ID, "--limit", "5"]), api_client)
    assert code == 0
    assert summary["pagination"]["limit"] == 5
    assert summary["runs"][0]["run_id"] == RUN_ID


@pytest.mark.asyncio
async def test_rerun_reports_support(orchestrator, api_client):
    orchestrator.rerun_supported = False
    code, summary = await run_command(build_parser().parse_args(["rerun", RUN_ID]), api_client)
    assert code == 0
    assert summary["supported"] is False


def test_select_persists_between_invocations(tmp_path):
    repo_root = Path(__file__).resolve().parents[2]
    script_path = repo_root / "backend" / "scripts" / "inventory_review.py"

    env = os.environ.copy()
    env["APP_ENV"] = "local"
    env["SELECTION_STATE_PATH"] = str(tmp_path / "selection.json")

    def invoke(*argv: str) -> dict:
        completed = subprocess.run(
            [sys.executable, str(script_path), *argv],
            cwd=str(repo_root),
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
        assert completed.returncode == 0, completed.stderr
        lines = [line.strip() for line in completed.stdout.splitlines() if line.strip()]
        return json.loads(lines[-1])

    assert invoke("select", CONTAINER_ID)["active_container_id"] == CONTAINER_ID
    assert invoke("select")["active_container_id"] == CONTAINER_ID
    assert invoke("select", "--clear")["active_container_id"] is None
