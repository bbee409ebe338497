"""Pytest configuration and fixtures."""

import threading

import pytest

from cleanup_superseded_runs import GitHubCLIError

ENV_VARS = (
    "GITHUB_REPOSITORY",
    "GITHUB_TOKEN",
    "INPUT_WORKFLOW-FILE",
    "INPUT_MAX-DELETIONS",
    "INPUT_DRY-RUN",
    "INPUT_GITHUB-TOKEN",
)


def make_run(
    run_id,
    branch="main",
    created_at="2024-05-01T10:00:00Z",
    status="completed",
    conclusion="cancelled",
    sha=None,
):
    """Build a workflow run dict shaped like the REST API response."""
    return {
        "id": run_id,
        "name": "CI",
        "display_title": f"run {run_id}",
        "head_branch": branch,
        "head_sha": sha if sha is not None else f"sha{run_id:04d}",
        "created_at": created_at,
        "status": status,
        "conclusion": conclusion,
        "html_url": f"https://github.com/octo/repo/actions/runs/{run_id}",
    }


class FakeClient:
    """In-memory stand-in for GitHubClient."""

    def __init__(self, workflows=None, runs=None, fail_ids=()):
        self.workflows = workflows if workflows is not None else [
            {"id": 7, "name": "CI", "path": ".github/workflows/ci.yml"}
        ]
        self.runs = list(runs or [])
        self.fail_ids = set(fail_ids)
        self.calls = []
        self.deleted = []
        self._lock = threading.Lock()

    def list_workflows(self, repository):
        self.calls.append(("list_workflows", repository))
        return list(self.workflows)

    def list_runs(self, repository, workflow_id, status=None, per_page=100):
        self.calls.append(("list_runs", repository, workflow_id, status))
        runs = self.runs
        if status == "cancelled":
            runs = [r for r in runs if r.get("conclusion") == "cancelled"]
        return list(runs[:per_page])

    def delete_run(self, repository, run_id):
        with self._lock:
            self.deleted.append(run_id)
        if run_id in self.fail_ids:
            raise GitHubCLIError("gh api -X DELETE", "HTTP 403: Forbidden", 1)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep CI-provided Action variables from leaking into tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
