from __future__ import annotations

import json

from conftest import FakeBrain, FakeControlPlane
from branch_orchestrator import review_main
from branch_orchestrator.config import AgentConfig


def _patch_runtime(monkeypatch, client):
    cfg = AgentConfig(
        azure_api_key="key",
        azure_endpoint="https://example.openai.azure.com",
        azure_deployment="gpt",
        project_name="demo",
        workspace_dir="/workspace",
    )
    monkeypatch.setattr(review_main, "load_config", lambda *args: cfg)
    monkeypatch.setattr(review_main, "LLMBrain", lambda *args, **kwargs: FakeBrain([]))
    monkeypatch.setattr(review_main, "MCPClient", lambda *args, **kwargs: client)


def test_failed_review_prints_error_report_with_lineage(monkeypatch, capsys):
    client = FakeControlPlane()
    _patch_runtime(monkeypatch, client)

    code = review_main.main(["--task", "t", "--parent-branch-id", "root", "--skip-scout"])

    assert code == 1
    report = json.loads(capsys.readouterr().out)
    assert report["status"] == "finished_with_error"
    assert report["finished"] is True
    assert report["task"] == "t"
    assert "code_review.log" in report["summary"]
    assert report["error"]["message"] == report["summary"]
    assert report["start_branch_id"] == "branch-1"
    assert report["latest_branch_id"] == "branch-3"
    assert len(client.launches) == 3


def test_clean_review_prints_run_result(monkeypatch, capsys):
    client = FakeControlPlane()
    client.artifacts["/workspace/code_review.log"] = ""
    _patch_runtime(monkeypatch, client)

    code = review_main.main(["--task", "t", "--parent-branch-id", "root", "--skip-scout"])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "clean"
    assert payload["latest_branch_id"] == "branch-1"
