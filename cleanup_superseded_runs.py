#!/usr/bin/env python3
"""
gh-cleanup-superseded — Delete superseded cancelled GitHub Actions runs.

A cancelled run is superseded when a newer run on the same branch (or
commit, for runs without a branch) has succeeded or is still queued or in
progress. Cancelled runs that are the last attempt on their ref are kept.

Runs as a plain CLI or as a GitHub Action step (reads the INPUT_* and
GITHUB_REPOSITORY environment variables). Uses the GitHub CLI (gh) for
API access.
"""

import argparse
import json
import os
import re
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

VERSION = "1.0.0"
PAGE_SIZE = 100
DEFAULT_MAX_DELETIONS = 3
DEFAULT_WORKERS = 5
DEFAULT_TIMEOUT = 30

ACTIVE_STATUSES = ("in_progress", "queued")


# ── Terminal Styling ──────────────────────────────────────────────────────


class Style:
    """ANSI styling with automatic detection. Respects NO_COLOR convention."""

    _enabled: bool = (
        hasattr(sys.stdout, "isatty")
        and sys.stdout.isatty()
        and os.environ.get("NO_COLOR") is None
    )

    BOLD = "\033[1m" if _enabled else ""
    DIM = "\033[2m" if _enabled else ""
    RED = "\033[31m" if _enabled else ""
    GREEN = "\033[32m" if _enabled else ""
    YELLOW = "\033[33m" if _enabled else ""
    CYAN = "\033[36m" if _enabled else ""
    RESET = "\033[0m" if _enabled else ""

    @classmethod
    def success(cls, text: str) -> str:
        return f"{cls.GREEN}{text}{cls.RESET}"

    @classmethod
    def error(cls, text: str) -> str:
        return f"{cls.RED}{text}{cls.RESET}"

    @classmethod
    def warn(cls, text: str) -> str:
        return f"{cls.YELLOW}{text}{cls.RESET}"

    @classmethod
    def info(cls, text: str) -> str:
        return f"{cls.CYAN}{text}{cls.RESET}"

    @classmethod
    def bold(cls, text: str) -> str:
        return f"{cls.BOLD}{text}{cls.RESET}"

    @classmethod
    def dim(cls, text: str) -> str:
        return f"{cls.DIM}{text}{cls.RESET}"


# ── Exceptions ────────────────────────────────────────────────────────────


class GitHubCLIError(Exception):
    """Raised when a gh CLI command fails."""

    def __init__(self, command: str, stderr: str, returncode: int):
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"gh failed (exit {returncode}): {stderr}")


class WorkflowNotFoundError(Exception):
    """Raised when no workflow path ends with the configured file name."""

    def __init__(self, workflow_file: str):
        self.workflow_file = workflow_file
        super().__init__(f"Workflow {workflow_file} not found")


class RunDataError(Exception):
    """Raised when a workflow run record is missing a usable field."""

    def __init__(self, run: Dict, message: str):
        self.run_id = run.get("id")
        super().__init__(f"Run {self.run_id}: {message}")


# ── GitHub API Layer ──────────────────────────────────────────────────────


def gh_api(
    endpoint: str,
    method: str = "GET",
    token: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Execute a single gh api call. No retries."""
    cmd = ["gh", "api"]
    if method != "GET":
        cmd.extend(["-X", method])
    cmd.append(endpoint)

    env = None
    if token:
        env = dict(os.environ, GH_TOKEN=token)

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            env=env,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise GitHubCLIError(" ".join(cmd), stderr, exc.returncode) from exc
    except FileNotFoundError as exc:
        raise GitHubCLIError(" ".join(cmd), "gh CLI not found on PATH", 127) from exc
    except subprocess.TimeoutExpired as exc:
        raise GitHubCLIError(
            " ".join(cmd), f"timed out after {timeout:g}s", -1
        ) from exc
    except OSError as exc:
        raise GitHubCLIError(" ".join(cmd), str(exc), -1) from exc

    return result.stdout.strip()


def gh_api_json(
    endpoint: str,
    key: str,
    token: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> List[Dict]:
    """Fetch one page from a list endpoint and return the items under key."""
    raw = gh_api(endpoint, token=token, timeout=timeout)
    if not raw:
        return []

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GitHubCLIError(
            f"gh api {endpoint}", f"Invalid JSON response: {exc}", 0
        ) from exc

    return data.get(key) or []


class GitHubClient:
    """The three Actions endpoints the cleanup needs, backed by gh api."""

    def __init__(
        self, token: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT
    ):
        self.token = token
        self.timeout = timeout

    def list_workflows(self, repository: str) -> List[Dict]:
        """Fetch the first page of workflows for a repository."""
        return gh_api_json(
            f"repos/{repository}/actions/workflows?per_page={PAGE_SIZE}",
            "workflows",
            token=self.token,
            timeout=self.timeout,
        )

    def list_runs(
        self,
        repository: str,
        workflow_id: int,
        status: Optional[str] = None,
        per_page: int = PAGE_SIZE,
    ) -> List[Dict]:
        """Fetch the most recent runs of a workflow, newest first."""
        endpoint = f"repos/{repository}/actions/workflows/{workflow_id}/runs"
        params = []
        if status:
            params.append(f"status={status}")
        params.append(f"per_page={per_page}")

        return gh_api_json(
            endpoint + "?" + "&".join(params),
            "workflow_runs",
            token=self.token,
            timeout=self.timeout,
        )

    def delete_run(self, repository: str, run_id: int) -> None:
        """Delete a workflow run. Raises GitHubCLIError on failure."""
        gh_api(
            f"repos/{repository}/actions/runs/{run_id}",
            method="DELETE",
            token=self.token,
            timeout=self.timeout,
        )


# ── Repository Parsing ────────────────────────────────────────────────────


def parse_repo(repo_input: str) -> Tuple[str, str]:
    """Parse a GitHub repository identifier into (owner, repo).

    Accepts:
      - owner/repo
      - https://github.com/owner/repo
      - git@github.com:owner/repo.git
    """
    text = repo_input.strip()
    owner, repo = "", ""

    if text.startswith("git@"):
        path = text.split(":", 1)[-1].removesuffix(".git")
        parts = path.split("/")
        if len(parts) >= 2:
            owner, repo = parts[0], parts[1]

    elif text.startswith(("http://", "https://")):
        path_parts = urlparse(text).path.strip("/").split("/")
        if len(path_parts) >= 2:
            owner, repo = path_parts[0], path_parts[1].removesuffix(".git")

    else:
        parts = text.split("/")
        if len(parts) == 2 and all(parts):
            owner, repo = parts[0], parts[1]

    if not owner or not repo:
        raise ValueError(
            f"Cannot parse repository: '{repo_input}'. "
            f"Expected 'owner/repo' or a GitHub URL."
        )

    valid_pattern = re.compile(r"^[a-zA-Z0-9._-]+$")
    if not valid_pattern.match(owner) or not valid_pattern.match(repo):
        raise ValueError(
            f"Invalid characters in repository: '{owner}/{repo}'. "
            f"Only alphanumerics, dots, hyphens, and underscores are allowed."
        )

    return owner, repo


# ── Classification ────────────────────────────────────────────────────────


def ref_key(run: Dict) -> str:
    """Branch name of a run, falling back to its commit SHA."""
    return run.get("head_branch") or run.get("head_sha") or ""


def parse_run_time(run: Dict) -> datetime:
    """Parse the created_at timestamp of a workflow run.

    Raises RunDataError when the field is missing, not ISO-8601, or has
    no UTC offset.
    """
    created_at = run.get("created_at")
    if not created_at or not isinstance(created_at, str):
        raise RunDataError(run, "missing created_at timestamp")
    try:
        parsed = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError as exc:
        raise RunDataError(
            run, f"malformed created_at timestamp {created_at!r}"
        ) from exc
    if parsed.tzinfo is None:
        raise RunDataError(run, f"created_at has no timezone {created_at!r}")
    return parsed


def is_superseded_run(cancelled_run: Dict, all_runs: Sequence[Dict]) -> bool:
    """Check whether a cancelled run was superseded by a newer run.

    A newer run on the same ref only counts when it succeeded or is still
    queued or in progress. A run with no branch and no SHA matches nothing.
    """
    key = ref_key(cancelled_run)
    if not key:
        return False

    cancelled_at = parse_run_time(cancelled_run)

    newer_runs = [
        run
        for run in all_runs
        if run.get("id") != cancelled_run.get("id")
        and ref_key(run) == key
        and parse_run_time(run) > cancelled_at
    ]

    has_newer_live_run = any(
        run.get("conclusion") == "success"
        or run.get("status") in ACTIVE_STATUSES
        for run in newer_runs
    )

    return len(newer_runs) > 0 and has_newer_live_run


def partition_cancelled_runs(
    cancelled_runs: Sequence[Dict], all_runs: Sequence[Dict]
) -> Tuple[List[Dict], List[Dict]]:
    """Split cancelled runs into (superseded, kept), preserving order."""
    superseded: List[Dict] = []
    kept: List[Dict] = []
    for run in cancelled_runs:
        if is_superseded_run(run, all_runs):
            superseded.append(run)
        else:
            kept.append(run)
    return superseded, kept


# ── Output Helpers ────────────────────────────────────────────────────────


def print_banner(repository: str, workflow_file: str, dry_run: bool = False) -> None:
    """Print the tool header."""
    line = Style.dim("=" * 58)
    print(f"\n{line}")
    print(
        f"  {Style.bold(Style.info('gh-cleanup-superseded'))} "
        f"{Style.dim(f'v{VERSION}')}"
    )
    print(f"  {repository}  {Style.dim(workflow_file)}")
    if dry_run:
        print(f"  {Style.warn('DRY-RUN MODE: Will only log, not delete')}")
    print(line)


def print_section(title: str) -> None:
    """Print a section header."""
    print(f"\n{Style.bold(title)}")
    print(Style.dim("-" * 58))


def print_run_line(run: Dict, suffix: str = "") -> None:
    """Print a formatted workflow run line."""
    name = (run.get("display_title") or run.get("name") or "Unknown")[:42]
    ref = (ref_key(run) or "?")[:16]
    created = (run.get("created_at") or "?")[:10]

    print(
        f"  {name:<42} {Style.dim(ref):<18} {Style.dim(created)} {suffix}"
    )


def print_summary(
    succeeded: int, failed: int, elapsed: float, dry_run: bool
) -> None:
    """Print the final summary."""
    line = Style.dim("=" * 58)
    label = "Would delete:" if dry_run else "Deleted:"
    print(f"\n{line}")
    print(f"  {Style.bold('Summary')}")
    print(f"  {Style.success(f'{label:<14}{succeeded}')}")
    if failed > 0:
        print(f"  {Style.error(f'Failed:       {failed}')}")
    print(f"  {Style.dim(f'Duration:     {elapsed:.1f}s')}")
    print(line)


# ── Cleanup Pipeline ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CleanupConfig:
    """Everything one cleanup invocation needs, resolved up front."""

    repository: str
    workflow_file: str
    token: Optional[str] = None
    max_deletions: int = DEFAULT_MAX_DELETIONS
    dry_run: bool = False
    workers: int = DEFAULT_WORKERS
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class DeletionResult:
    """Outcome of one delete request."""

    run: Dict
    ok: bool
    error: Optional[str] = None


@dataclass
class CleanupReport:
    """What a pipeline run found, selected, and did."""

    workflow: Dict
    dry_run: bool
    cancelled: List[Dict] = field(default_factory=list)
    superseded: List[Dict] = field(default_factory=list)
    kept: List[Dict] = field(default_factory=list)
    selected: List[Dict] = field(default_factory=list)
    results: List[DeletionResult] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        if self.dry_run:
            return len(self.selected)
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


class CleanupPipeline:
    """Fetch runs, classify cancelled ones, and delete the superseded ones.

    ``client`` needs ``list_workflows``, ``list_runs`` and ``delete_run``
    with the signatures of :class:`GitHubClient`.
    """

    def __init__(self, config: CleanupConfig, client):
        self.config = config
        self.client = client

    def resolve_workflow(self) -> Dict:
        """Return the first workflow whose path ends with the file name."""
        workflows = self.client.list_workflows(self.config.repository)
        for workflow in workflows:
            if (workflow.get("path") or "").endswith(self.config.workflow_file):
                return workflow
        raise WorkflowNotFoundError(self.config.workflow_file)

    def run(self) -> CleanupReport:
        config = self.config
        repository = config.repository

        workflow = self.resolve_workflow()
        workflow_id = workflow["id"]
        print(
            f"Workflow: {Style.info(workflow.get('name') or workflow['path'])} "
            f"{Style.dim(f'(id {workflow_id})')}"
        )

        all_runs = self.client.list_runs(repository, workflow_id)
        cancelled_runs = self.client.list_runs(
            repository, workflow_id, status="cancelled"
        )

        report = CleanupReport(
            workflow=workflow, dry_run=config.dry_run, cancelled=cancelled_runs
        )
        print(f"Found {len(cancelled_runs)} cancelled runs")

        for run in cancelled_runs:
            if not ref_key(run):
                print(
                    Style.warn(
                        f"  Run {run.get('id')} has no branch or SHA; keeping it"
                    )
                )

        report.superseded, report.kept = partition_cancelled_runs(
            cancelled_runs, all_runs
        )
        print(
            f"Identified {len(report.superseded)} as superseded (will delete)"
        )
        print(f"Keeping {len(report.kept)} cancelled runs (not superseded)")

        report.selected = report.superseded[: config.max_deletions]
        if len(report.selected) < len(report.superseded):
            print(
                Style.dim(
                    f"  Limited to {config.max_deletions} deletion(s) "
                    f"this run"
                )
            )

        if not report.selected:
            return report

        if config.dry_run:
            print_section(f"Dry run: {len(report.selected)} run(s)")
            for run in report.selected:
                print(f"[DRY-RUN] Would delete: {run.get('html_url')}")
            return report

        print_section(f"Deleting {len(report.selected)} run(s)")
        report.results = self.delete_runs(report.selected)
        return report

    def delete_runs(self, runs: List[Dict]) -> List[DeletionResult]:
        """Delete runs concurrently and wait for all of them.

        Results come back in the order of ``runs``; a failure in one
        deletion does not stop the others.
        """
        repository = self.config.repository

        def _delete(run: Dict) -> DeletionResult:
            try:
                self.client.delete_run(repository, run["id"])
            except GitHubCLIError as exc:
                return DeletionResult(run, False, exc.stderr or str(exc))
            except Exception as exc:
                return DeletionResult(run, False, str(exc) or type(exc).__name__)
            return DeletionResult(run, True)

        for run in runs:
            print(
                f"Deleting superseded cancelled workflow run: "
                f"{run.get('html_url')}"
            )

        workers = max(1, min(self.config.workers, len(runs)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_delete, run) for run in runs]
            results = [future.result() for future in futures]

        for result in results:
            if result.ok:
                print_run_line(result.run, suffix=Style.success("deleted"))
            else:
                print_run_line(
                    result.run,
                    suffix=Style.error(f"failed: {result.error}"),
                )

        return results


# ── Configuration ─────────────────────────────────────────────────────────


def env_flag(name: str, default: bool = False) -> bool:
    """Read a GitHub Action boolean input ("true"/"false")."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() == "true"


def env_int(name: str, default: int) -> int:
    """Read an integer input, raising ValueError on garbage."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'") from None


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser. Defaults come from Action inputs."""
    parser = argparse.ArgumentParser(
        prog="gh-cleanup-superseded",
        description=(
            "Delete cancelled GitHub Actions runs that a newer successful "
            "or active run on the same branch has superseded."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""examples:
  %(prog)s owner/repo -w ci.yml --dry-run        Preview what would be deleted
  %(prog)s owner/repo -w ci.yml -m 10            Delete up to 10 superseded runs

When run as a GitHub Action step, GITHUB_REPOSITORY, INPUT_WORKFLOW-FILE,
INPUT_MAX-DELETIONS, INPUT_DRY-RUN and INPUT_GITHUB-TOKEN supply the defaults.
""",
    )

    parser.add_argument(
        "repo",
        nargs="?",
        help="Repository (owner/repo or GitHub URL). Default: $GITHUB_REPOSITORY",
    )
    parser.add_argument(
        "-w",
        "--workflow-file",
        help="Workflow file name or path suffix, e.g. ci.yml",
    )
    parser.add_argument(
        "-m",
        "--max-deletions",
        type=int,
        help=f"Delete at most N runs per invocation (default: {DEFAULT_MAX_DELETIONS})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Only log what would be deleted",
    )
    parser.add_argument(
        "--token",
        help="GitHub token. Default: $INPUT_GITHUB-TOKEN, then $GITHUB_TOKEN, "
        "then the gh CLI login",
    )
    parser.add_argument(
        "-p",
        "--parallel",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Parallel deletion workers (default: {DEFAULT_WORKERS})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Per-request timeout in seconds (default: {DEFAULT_TIMEOUT})",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {VERSION}",
    )

    return parser


def config_from_args(args: argparse.Namespace) -> CleanupConfig:
    """Merge parsed flags with Action environment inputs.

    Raises ValueError for anything missing or out of range.
    """
    repo_input = args.repo or os.environ.get("GITHUB_REPOSITORY", "")
    if not repo_input:
        raise ValueError(
            "Repository is required (argument or $GITHUB_REPOSITORY)."
        )
    owner, repo = parse_repo(repo_input)

    workflow_file = (
        args.workflow_file or os.environ.get("INPUT_WORKFLOW-FILE", "")
    ).strip()
    if not workflow_file:
        raise ValueError(
            "Workflow file is required (--workflow-file or $INPUT_WORKFLOW-FILE)."
        )

    max_deletions = args.max_deletions
    if max_deletions is None:
        max_deletions = env_int("INPUT_MAX-DELETIONS", DEFAULT_MAX_DELETIONS)
    if max_deletions < 0:
        raise ValueError("--max-deletions must be 0 or greater")

    dry_run = args.dry_run
    if dry_run is None:
        dry_run = env_flag("INPUT_DRY-RUN")

    if args.parallel < 1:
        raise ValueError("--parallel must be at least 1")
    if args.timeout <= 0:
        raise ValueError("--timeout must be greater than 0")

    token = (
        args.token
        or os.environ.get("INPUT_GITHUB-TOKEN")
        or os.environ.get("GITHUB_TOKEN")
        or None
    )

    return CleanupConfig(
        repository=f"{owner}/{repo}",
        workflow_file=workflow_file,
        token=token,
        max_deletions=max_deletions,
        dry_run=dry_run,
        workers=args.parallel,
        timeout=args.timeout,
    )


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv: Optional[List[str]] = None, client=None) -> int:
    """Entry point. Returns exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as exc:
        print(Style.error(str(exc)))
        return 1

    if client is None:
        client = GitHubClient(token=config.token, timeout=config.timeout)

    print_banner(config.repository, config.workflow_file, dry_run=config.dry_run)

    start_time = time.monotonic()
    try:
        report = CleanupPipeline(config, client).run()
    except WorkflowNotFoundError as exc:
        print(Style.error(str(exc)))
        return 1
    except GitHubCLIError as exc:
        print(Style.error(f"GitHub API error: {exc.stderr or exc}"))
        return 1
    except RunDataError as exc:
        print(Style.error(f"Invalid run data: {exc}"))
        return 1
    elapsed = time.monotonic() - start_time

    would_be = "would be " if config.dry_run else ""
    print(
        f"\n{Style.info('Cleanup complete:')} {report.deleted} superseded "
        f"run(s) {would_be}deleted"
    )
    print_summary(report.deleted, report.failed, elapsed, config.dry_run)

    return 1 if report.failed > 0 else 0


def run() -> None:
    """Console script wrapper."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print(Style.warn("\nInterrupted."))
        sys.exit(130)


if __name__ == "__main__":
    run()
