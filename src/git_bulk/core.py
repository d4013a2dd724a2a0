"""
git-bulk: Apply one Git operation to every repository under a directory.

Walks a directory tree, finds every Git repository beneath it and runs a bulk
sync (fetch + fast-forward), branch switch or local branch prune across all
of them, reporting per-repository outcomes and an aggregate summary.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import click
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ._version import __version__
from .formatters import OutputFormatter

logger = logging.getLogger("git_bulk")

COMMIT_PREVIEW_LIMIT = 5

HEADS_PREFIX = "refs/heads/"

# git's messages are matched in English ("not fully merged"), so pin the C locale
GIT_LOCALE = {"LC_ALL": "C"}

# =============================================================================
# Errors
# =============================================================================


class GitBulkError(Exception):
    """Base class for all git-bulk errors."""


class ConfigurationError(GitBulkError):
    """Invalid invocation; raised before any repository is touched."""


class ToolNotFoundError(ConfigurationError):
    """The git executable is not on the PATH."""


class BaseDirectoryNotFoundError(ConfigurationError):
    """The base directory to scan does not exist."""


class RepositoryAccessError(GitBulkError):
    """A discovered repository directory cannot be entered."""


class NotARepositoryError(GitBulkError):
    """Path is not inside a Git working tree."""


class GitCommandError(GitBulkError):
    """A git command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.command = ["git", *args]
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        details = stderr or stdout or "no output"
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {details}")

    @property
    def output(self) -> str:
        return self.stderr or self.stdout


# =============================================================================
# Domain Models
# =============================================================================


class OutcomeKind(StrEnum):
    """Tag of one operation outcome."""

    UPDATED = "updated"
    SWITCHED = "switched"
    DELETED = "deleted"
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


CHANGE_KINDS = frozenset(
    {OutcomeKind.UPDATED, OutcomeKind.SWITCHED, OutcomeKind.CREATED, OutcomeKind.DELETED}
)


class Reason(StrEnum):
    """Machine-readable reason attached to skipped and failed outcomes."""

    INVALID_REPO = "invalid-repo"
    DETACHED_HEAD = "detached-head"
    DIRTY_TREE = "dirty-tree"
    NO_REMOTES = "no-remotes"
    NO_TRACKED_BRANCHES = "no-tracked-branches"
    UP_TO_DATE = "up-to-date"
    UPSTREAM_GONE = "upstream-gone"
    NON_FAST_FORWARD = "non-fast-forward"
    FETCH_FAILED = "fetch-failed"
    CHECKOUT_FAILED = "checkout-failed"
    ALREADY_ON_BRANCH = "already-on-branch"
    BRANCH_NOT_FOUND = "branch-not-found"
    BRANCH_CHECKED_OUT = "branch-checked-out"
    UNMERGED_COMMITS = "unmerged-commits"
    DELETE_FAILED = "delete-failed"
    ACCESS_ERROR = "access-error"
    COMMAND_FAILED = "command-failed"


class Operation(StrEnum):
    """Bulk operation selected on the command line."""

    SYNC = "sync"
    SWITCH = "switch"
    PRUNE = "prune"


@dataclass(frozen=True)
class RepositoryState:
    """Snapshot of one repository at inspection time."""

    path: Path
    is_valid: bool = True
    current_branch: str | None = None
    has_commits: bool = False
    has_uncommitted_changes: bool = False
    remotes: tuple[str, ...] = ()
    local_branches: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RunConfig:
    """Resolved configuration for one invocation."""

    base_dir: Path
    dry_run: bool = False
    verbose: bool = False
    target_branch: str | None = None
    force_delete: bool = False
    skip_confirm: bool = False
    pull_after_switch: bool = False
    json_output: bool = False


@dataclass
class OperationOutcome:
    """Result of attempting the bulk action on one repository or branch."""

    kind: OutcomeKind
    reason: Reason | None = None
    branch: str | None = None
    message: str = ""
    count: int | None = None
    details: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def is_failure(self) -> bool:
        return self.kind == OutcomeKind.FAILED

    @property
    def is_change(self) -> bool:
        return self.kind in CHANGE_KINDS

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "reason": self.reason.value if self.reason else None,
            "branch": self.branch,
            "message": self.message,
            "count": self.count,
            "details": self.details,
            "dry_run": self.dry_run,
        }


@dataclass
class RepositoryReport:
    """All outcomes produced for one repository during a run."""

    path: Path
    name: str
    outcomes: list[OperationOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(o.is_failure for o in self.outcomes)

    @property
    def changed(self) -> bool:
        return any(o.is_change for o in self.outcomes)

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.changed:
            return "succeeded"
        return "skipped"

    def add(self, outcome: OperationOutcome) -> OperationOutcome:
        self.outcomes.append(outcome)
        return outcome

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "name": self.name,
            "status": self.status,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "warnings": self.warnings,
        }


@dataclass(frozen=True)
class RunSummary:
    """Final, immutable counters for one run."""

    operation: Operation
    dry_run: bool = False
    total_repos: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    commits_pulled: int = 0
    branches_updated: int = 0
    branches_switched: int = 0
    branches_created: int = 0
    branches_deleted: int = 0
    warnings: int = 0
    exit_code: int = 0

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "dry_run": self.dry_run,
            "total_repos": self.total_repos,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "commits_pulled": self.commits_pulled,
            "branches_updated": self.branches_updated,
            "branches_switched": self.branches_switched,
            "branches_created": self.branches_created,
            "branches_deleted": self.branches_deleted,
            "warnings": self.warnings,
            "exit_code": self.exit_code,
        }


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


class GitOperations:
    """Low-level Git operations for a single repository.

    Every command runs with ``cwd`` set to the repository, so nothing here
    depends on the process working directory. Query methods return plain
    values and never raise on a non-zero exit; mutating methods raise
    ``GitCommandError``.

    Branch names are always full names (``release/v2``, never ``heads/v2``)
    and are passed to git as ``refs/heads/<name>`` wherever a tag of the
    same name could shadow them.
    """

    def __init__(self, repo_path: Path, git_executable: str = "git"):
        self.repo_path = repo_path
        self.git_executable = git_executable

    def _run(self, *args: str, check: bool = False) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        logger.debug("git %s (in %s)", " ".join(args), self.repo_path)
        try:
            result = subprocess.run(
                [self.git_executable, *args],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=False,
                env={**os.environ, **GIT_LOCALE},
            )
        except FileNotFoundError as e:
            if not self.repo_path.is_dir():
                raise RepositoryAccessError(f"Cannot enter {self.repo_path}") from e
            raise ToolNotFoundError(f"'{self.git_executable}' was not found in PATH") from e
        except (PermissionError, NotADirectoryError) as e:
            raise RepositoryAccessError(f"Cannot enter {self.repo_path}: {e}") from e
        if check and result.returncode != 0:
            raise GitCommandError(
                list(args), result.returncode, result.stderr.strip(), result.stdout.strip()
            )
        return result

    def _lines(self, *args: str) -> list[str]:
        result = self._run(*args)
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    # -- state queries --------------------------------------------------------

    def is_work_tree(self) -> bool:
        """Check the path is inside a non-bare working tree."""
        result = self._run("rev-parse", "--is-inside-work-tree")
        return result.returncode == 0 and result.stdout.strip() == "true"

    def has_commits(self) -> bool:
        """Check HEAD resolves to a commit."""
        return self._run("rev-parse", "--verify", "--quiet", "HEAD").returncode == 0

    def current_branch(self) -> str | None:
        """Get the symbolic ref at HEAD, None when detached."""
        result = self._run("symbolic-ref", "--quiet", "HEAD")
        if result.returncode != 0:
            return None
        return result.stdout.strip().removeprefix(HEADS_PREFIX) or None

    def has_uncommitted_changes(self) -> bool:
        """Check tracked files for staged or unstaged changes."""
        result = self._run(
            "--no-optional-locks", "status", "--porcelain", "--untracked-files=no", check=True
        )
        return bool(result.stdout.strip())

    def remotes(self) -> list[str]:
        return self._lines("remote")

    def local_branches(self) -> list[str]:
        return self._lines("for-each-ref", "--format=%(refname:lstrip=2)", HEADS_PREFIX)

    def tracking_branches(self) -> list[tuple[str, str]]:
        """Get (branch, upstream) pairs for local branches with an upstream."""
        pairs = []
        for line in self._lines(
            "for-each-ref", "--format=%(refname:lstrip=2)%09%(upstream:short)", HEADS_PREFIX
        ):
            branch, _, upstream = line.partition("\t")
            if upstream:
                pairs.append((branch, upstream))
        return pairs

    def upstream_of(self, branch: str) -> str | None:
        result = self._run("rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{u}}")
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def ref_exists(self, ref: str) -> bool:
        return self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}").returncode == 0

    def ahead_behind(self, branch: str, upstream: str) -> tuple[int, int]:
        """Get (ahead, behind) commit counts of branch relative to upstream."""
        result = self._run(
            "rev-list", "--left-right", "--count", f"{HEADS_PREFIX}{branch}...{upstream}", check=True
        )
        ahead, behind = result.stdout.split()
        return int(ahead), int(behind)

    def unique_commits(self, branch: str, upstream: str) -> list[str]:
        """One-line log of commits on upstream that branch lacks."""
        return self._lines("log", "--oneline", f"{HEADS_PREFIX}{branch}..{upstream}")

    def remote_has_branch(self, remote: str, branch: str) -> bool:
        result = self._run("ls-remote", "--exit-code", "--heads", remote, f"{HEADS_PREFIX}{branch}")
        return result.returncode == 0

    def head_commit(self) -> str:
        return self._run("rev-parse", "HEAD", check=True).stdout.strip()

    # -- mutations ------------------------------------------------------------

    def fetch(self, remote: str) -> None:
        self._run("fetch", remote, "--prune", "--quiet", check=True)

    def checkout(self, branch: str) -> None:
        # switch only accepts branches, so a same-named tag can never detach HEAD
        self._run("switch", "--quiet", branch, check=True)

    def merge_fast_forward(self, upstream: str) -> None:
        self._run("merge", "--ff-only", "--quiet", upstream, check=True)

    def create_tracking_branch(self, branch: str, remote: str) -> None:
        """Fetch remote and check out a new local branch tracking remote/branch."""
        self.fetch(remote)
        self._run("checkout", "--quiet", "-b", branch, "--track", f"{remote}/{branch}", check=True)

    def pull_fast_forward(self) -> int:
        """Fast-forward pull the current branch, returning commits pulled."""
        before = self.head_commit()
        self._run("pull", "--ff-only", "--quiet", check=True)
        result = self._run("rev-list", "--count", f"{before}..HEAD", check=True)
        return int(result.stdout.strip() or 0)

    def delete_branch(self, branch: str, force: bool = False) -> None:
        self._run("branch", "-D" if force else "-d", branch, check=True)


def ensure_git_available(git_executable: str = "git") -> str:
    """Return the resolved git path or raise ToolNotFoundError."""
    resolved = shutil.which(git_executable)
    if resolved is None:
        raise ToolNotFoundError(f"'{git_executable}' command not found. Please install Git.")
    return resolved


# =============================================================================
# Discovery & Inspection
# =============================================================================


def discover_repositories(base_dir: Path) -> Iterator[Path]:
    """Yield every directory under base_dir whose child ``.git`` is a directory.

    Entries are visited in name order at every level. Symbolic links and
    directories that cannot be read are skipped.
    """
    base_dir = Path(base_dir)
    if not base_dir.is_dir():
        raise BaseDirectoryNotFoundError(f"The directory '{base_dir}' does not exist.")

    def on_error(error: OSError) -> None:
        logger.debug("Skipping unreadable directory %s: %s", error.filename, error.strerror)

    for dirpath, dirnames, _ in os.walk(base_dir, onerror=on_error, followlinks=False):
        current = Path(dirpath)
        kept = []
        for name in sorted(dirnames):
            child = current / name
            if os.path.islink(child):
                logger.debug("Skipping symbolic link %s", child)
                continue
            if name == ".git":
                continue
            kept.append(name)
        if ".git" in dirnames and not os.path.islink(current / ".git"):
            yield current.resolve()
        dirnames[:] = kept


def inspect_repository(git: GitOperations) -> RepositoryState:
    """Build a fresh RepositoryState or raise NotARepositoryError."""
    if not git.is_work_tree():
        raise NotARepositoryError(f"Not a Git working tree: {git.repo_path}")

    has_commits = git.has_commits()
    # An unborn branch has nothing to compare against: report it as no branch, clean.
    current_branch = git.current_branch() if has_commits else None
    dirty = git.has_uncommitted_changes() if has_commits else False

    return RepositoryState(
        path=git.repo_path,
        is_valid=True,
        current_branch=current_branch,
        has_commits=has_commits,
        has_uncommitted_changes=dirty,
        remotes=tuple(git.remotes()),
        local_branches=frozenset(git.local_branches()),
    )


def commit_preview(commits: list[str], limit: int = COMMIT_PREVIEW_LIMIT) -> list[str]:
    """Bound a commit list to ``limit`` lines plus an "N more" suffix."""
    preview = list(commits[:limit])
    if len(commits) > limit:
        preview.append(f"... {len(commits) - limit} more")
    return preview


# =============================================================================
# Bulk Operations
# =============================================================================


class BulkOperation:
    """Shared shape of the sync, switch and prune executors."""

    operation: Operation

    def __init__(self, config: RunConfig):
        self.config = config

    def execute(self, repo_path: Path, git: GitOperations) -> RepositoryReport:
        report = RepositoryReport(path=repo_path, name=repo_path.name)
        try:
            state = inspect_repository(git)
        except NotARepositoryError as e:
            report.add(
                OperationOutcome(OutcomeKind.SKIPPED, Reason.INVALID_REPO, message=str(e))
            )
            return report
        self.apply(state, git, report)
        return report

    def apply(self, state: RepositoryState, git: GitOperations, report: RepositoryReport) -> None:
        raise NotImplementedError

    @staticmethod
    def _skip(report: RepositoryReport, reason: Reason, message: str, branch: str | None = None):
        return report.add(OperationOutcome(OutcomeKind.SKIPPED, reason, branch=branch, message=message))

    @staticmethod
    def _restore_branch(git: GitOperations, branch: str | None, report: RepositoryReport) -> None:
        """Check out branch again if HEAD moved away from it; failures only warn."""
        if branch is None or git.current_branch() == branch:
            return
        try:
            git.checkout(branch)
        except GitCommandError as e:
            logger.warning("Could not restore %s in %s: %s", branch, git.repo_path, e.output)
            report.warnings.append(f"Could not restore branch {branch}: {e.output}")


class SyncOperation(BulkOperation):
    """Fetch every remote and fast-forward every tracked local branch."""

    operation = Operation.SYNC

    def apply(self, state: RepositoryState, git: GitOperations, report: RepositoryReport) -> None:
        if state.current_branch is None:
            self._skip(report, Reason.DETACHED_HEAD, "No active branch (detached HEAD or empty repo)")
            return
        if state.has_uncommitted_changes:
            self._skip(report, Reason.DIRTY_TREE, "Uncommitted changes found")
            return
        if not state.remotes:
            self._skip(report, Reason.NO_REMOTES, "No remotes configured")
            return

        for remote in state.remotes:
            try:
                git.fetch(remote)
            except GitCommandError as e:
                report.add(
                    OperationOutcome(
                        OutcomeKind.FAILED,
                        Reason.FETCH_FAILED,
                        message=f"Fetch from {remote} failed",
                        details=[e.output] if e.output else [],
                    )
                )

        tracked = git.tracking_branches()
        if not tracked:
            self._skip(report, Reason.NO_TRACKED_BRANCHES, "No local branch tracks an upstream")
            return

        try:
            for branch, upstream in tracked:
                self._sync_branch(git, branch, upstream, report)
        finally:
            self._restore_branch(git, state.current_branch, report)

    def _sync_branch(
        self, git: GitOperations, branch: str, upstream: str, report: RepositoryReport
    ) -> None:
        if not git.ref_exists(upstream):
            self._skip(report, Reason.UPSTREAM_GONE, f"Upstream {upstream} no longer exists", branch)
            return

        try:
            _, behind = git.ahead_behind(branch, upstream)
        except GitCommandError as e:
            report.add(
                OperationOutcome(
                    OutcomeKind.FAILED, Reason.COMMAND_FAILED, branch=branch,
                    message=f"Could not compare {branch} with {upstream}", details=[e.output],
                )
            )
            return

        if behind == 0:
            self._skip(report, Reason.UP_TO_DATE, f"{branch} is up to date with {upstream}", branch)
            return

        if self.config.dry_run:
            report.add(
                OperationOutcome(
                    OutcomeKind.UPDATED, branch=branch, count=behind, dry_run=True,
                    message=f"Would checkout {branch} and merge from {upstream}",
                )
            )
            return

        try:
            git.checkout(branch)
        except GitCommandError as e:
            report.add(
                OperationOutcome(
                    OutcomeKind.FAILED, Reason.CHECKOUT_FAILED, branch=branch,
                    message=f"Failed to checkout {branch}", details=[e.output],
                )
            )
            return

        try:
            git.merge_fast_forward(upstream)
        except GitCommandError:
            report.add(
                OperationOutcome(
                    OutcomeKind.FAILED, Reason.NON_FAST_FORWARD, branch=branch, count=behind,
                    message=f"Merge failed on {branch} (non fast-forward)",
                    details=commit_preview(git.unique_commits(branch, upstream)),
                )
            )
            return

        report.add(
            OperationOutcome(
                OutcomeKind.UPDATED, branch=branch, count=behind,
                message=f"{branch} updated from {upstream}",
            )
        )


class SwitchOperation(BulkOperation):
    """Check out the target branch, creating it from a remote when needed."""

    operation = Operation.SWITCH

    def apply(self, state: RepositoryState, git: GitOperations, report: RepositoryReport) -> None:
        target = self.config.target_branch
        if state.has_uncommitted_changes:
            self._skip(report, Reason.DIRTY_TREE, "Uncommitted changes found", target)
            return

        current = state.current_branch
        if current == target:
            self._skip(report, Reason.ALREADY_ON_BRANCH, f"Already on {target}", target)
            self._maybe_pull(git, target, report)
            return

        was = current or "(detached)"
        if target in state.local_branches:
            outcome = self._switch_local(git, target, was, report)
        else:
            remote = next((r for r in state.remotes if git.remote_has_branch(r, target)), None)
            if remote is None:
                report.add(
                    OperationOutcome(
                        OutcomeKind.FAILED, Reason.BRANCH_NOT_FOUND, branch=target,
                        message=f"Branch '{target}' not found locally or remotely",
                    )
                )
                return
            outcome = self._create_from_remote(git, target, remote, was, report)

        if outcome.is_failure:
            self._restore_branch(git, current, report)
        elif not outcome.dry_run:
            self._maybe_pull(git, target, report)

    def _switch_local(
        self, git: GitOperations, target: str, was: str, report: RepositoryReport
    ) -> OperationOutcome:
        if self.config.dry_run:
            return report.add(
                OperationOutcome(
                    OutcomeKind.SWITCHED, branch=target, dry_run=True,
                    message=f"Would switch from {was} to {target}",
                )
            )
        try:
            git.checkout(target)
        except GitCommandError as e:
            return report.add(
                OperationOutcome(
                    OutcomeKind.FAILED, Reason.CHECKOUT_FAILED, branch=target,
                    message="Failed to switch branch", details=[e.output],
                )
            )
        return report.add(
            OperationOutcome(
                OutcomeKind.SWITCHED, branch=target, message=f"Switched to {target} (was {was})"
            )
        )

    def _create_from_remote(
        self, git: GitOperations, target: str, remote: str, was: str, report: RepositoryReport
    ) -> OperationOutcome:
        if self.config.dry_run:
            return report.add(
                OperationOutcome(
                    OutcomeKind.CREATED, branch=target, dry_run=True,
                    message=f"Would create local branch from {remote}/{target}",
                )
            )
        try:
            git.create_tracking_branch(target, remote)
        except GitCommandError as e:
            return report.add(
                OperationOutcome(
                    OutcomeKind.FAILED, Reason.CHECKOUT_FAILED, branch=target,
                    message=f"Failed to create branch from {remote}/{target}", details=[e.output],
                )
            )
        return report.add(
            OperationOutcome(
                OutcomeKind.CREATED, branch=target,
                message=f"Created {target} tracking {remote}/{target} (was {was})",
            )
        )

    def _maybe_pull(self, git: GitOperations, branch: str, report: RepositoryReport) -> None:
        if not self.config.pull_after_switch or self.config.dry_run:
            return
        if git.upstream_of(branch) is None:
            logger.debug("No upstream for %s in %s, not pulling", branch, git.repo_path)
            return
        try:
            pulled = git.pull_fast_forward()
        except GitCommandError as e:
            report.warnings.append(f"Fast-forward pull of {branch} failed: {e.output}")
            return
        report.outcomes[-1].details.append(f"Pulled {pulled} commit(s)")


class PruneOperation(BulkOperation):
    """Delete the target local branch, never the checked-out one."""

    operation = Operation.PRUNE

    def apply(self, state: RepositoryState, git: GitOperations, report: RepositoryReport) -> None:
        target = self.config.target_branch
        if target not in state.local_branches:
            self._skip(report, Reason.BRANCH_NOT_FOUND, f"Local branch does not exist: {target}", target)
            return
        if target == state.current_branch:
            self._skip(
                report, Reason.BRANCH_CHECKED_OUT, f"Branch '{target}' is currently checked out", target
            )
            return

        try:
            git.delete_branch(target, force=self.config.force_delete)
        except GitCommandError as e:
            unmerged = not self.config.force_delete and "not fully merged" in e.output
            report.add(
                OperationOutcome(
                    OutcomeKind.FAILED,
                    Reason.UNMERGED_COMMITS if unmerged else Reason.DELETE_FAILED,
                    branch=target,
                    message="Branch deletion failed",
                    details=[e.output] if e.output else [],
                )
            )
            return

        report.add(OperationOutcome(OutcomeKind.DELETED, branch=target, message=f"Branch deleted: {target}"))


OPERATIONS: dict[Operation, type[BulkOperation]] = {
    Operation.SYNC: SyncOperation,
    Operation.SWITCH: SwitchOperation,
    Operation.PRUNE: PruneOperation,
}


# =============================================================================
# Summary & Runner
# =============================================================================


class RunSummaryAggregator:
    """Accumulate repository reports into run counters."""

    def __init__(self, operation: Operation, dry_run: bool = False):
        self.operation = operation
        self.dry_run = dry_run
        self.total_repos = 0
        self.succeeded = 0
        self.skipped = 0
        self.failed = 0
        self.commits_pulled = 0
        self.branches_updated = 0
        self.branches_switched = 0
        self.branches_created = 0
        self.branches_deleted = 0
        self.warnings = 0

    def record(self, report: RepositoryReport) -> None:
        self.total_repos += 1
        self.warnings += len(report.warnings)
        if report.failed:
            self.failed += 1
        elif report.changed:
            self.succeeded += 1
        else:
            self.skipped += 1

        for outcome in report.outcomes:
            if outcome.dry_run:
                continue
            if outcome.kind == OutcomeKind.UPDATED:
                self.branches_updated += 1
                self.commits_pulled += outcome.count or 0
            elif outcome.kind == OutcomeKind.SWITCHED:
                self.branches_switched += 1
            elif outcome.kind == OutcomeKind.CREATED:
                self.branches_switched += 1
                self.branches_created += 1
            elif outcome.kind == OutcomeKind.DELETED:
                self.branches_deleted += 1

    def finalize(self) -> RunSummary:
        return RunSummary(
            operation=self.operation,
            dry_run=self.dry_run,
            total_repos=self.total_repos,
            succeeded=self.succeeded,
            skipped=self.skipped,
            failed=self.failed,
            commits_pulled=self.commits_pulled,
            branches_updated=self.branches_updated,
            branches_switched=self.branches_switched,
            branches_created=self.branches_created,
            branches_deleted=self.branches_deleted,
            warnings=self.warnings,
            exit_code=1 if self.failed else 0,
        )


class BulkRunner:
    """Drive discovery, the selected operation and aggregation for one run."""

    def __init__(
        self,
        config: RunConfig,
        operation: BulkOperation,
        git_factory: Callable[[Path], GitOperations] = GitOperations,
        on_report: Callable[[RepositoryReport], None] | None = None,
    ):
        self.config = config
        self.operation = operation
        self.git_factory = git_factory
        self.on_report = on_report
        self.reports: list[RepositoryReport] = []

    def run(self) -> RunSummary:
        aggregator = RunSummaryAggregator(self.operation.operation, dry_run=self.config.dry_run)
        for repo_path in discover_repositories(self.config.base_dir):
            report = self._process(repo_path)
            aggregator.record(report)
            self.reports.append(report)
            if self.on_report is not None:
                self.on_report(report)
        return aggregator.finalize()

    def _process(self, repo_path: Path) -> RepositoryReport:
        if not os.access(repo_path, os.R_OK | os.X_OK):
            return self._error_report(repo_path, Reason.ACCESS_ERROR, "Error accessing repository")
        try:
            return self.operation.execute(repo_path, self.git_factory(repo_path))
        except RepositoryAccessError as e:
            return self._error_report(repo_path, Reason.ACCESS_ERROR, str(e))
        except GitCommandError as e:
            logger.debug("Unexpected git failure in %s: %s", repo_path, e)
            return self._error_report(repo_path, Reason.COMMAND_FAILED, str(e))

    @staticmethod
    def _error_report(repo_path: Path, reason: Reason, message: str) -> RepositoryReport:
        report = RepositoryReport(path=repo_path, name=repo_path.name)
        report.add(OperationOutcome(OutcomeKind.FAILED, reason, message=message))
        return report


# =============================================================================
# Configuration
# =============================================================================


def load_base_dir_file(config_file: Path) -> Path | None:
    """Read the base directory from a file (first non-comment line).

    Supports environment variables ($HOME, ${DEV_ROOT}) and tilde expansion.
    """
    try:
        with open(config_file.expanduser()) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    return Path(os.path.expandvars(line)).expanduser()
    except FileNotFoundError:
        pass
    return None


def resolve_default_base_dir() -> Path:
    """Resolve the default base directory when --dir is not given.

    Priority order:
    1. $GIT_BULK_DIR environment variable
    2. $GIT_BULK_CONFIG file
    3. ~/.config/git-bulk/base-dir (XDG-compliant)
    4. ~/.git-bulk-base-dir (legacy fallback)
    5. current directory
    """
    env_dir = os.environ.get("GIT_BULK_DIR")
    if env_dir:
        return Path(os.path.expandvars(env_dir)).expanduser()

    candidates = []
    env_config = os.environ.get("GIT_BULK_CONFIG")
    if env_config:
        candidates.append(Path(env_config).expanduser())
    candidates.append(Path.home() / ".config" / "git-bulk" / "base-dir")
    candidates.append(Path.home() / ".git-bulk-base-dir")

    for candidate in candidates:
        if candidate.is_file():
            base_dir = load_base_dir_file(candidate)
            if base_dir is not None:
                return base_dir

    return Path(".")


def build_run_config(
    operation: Operation,
    directory: Path | None,
    *,
    dry_run: bool = False,
    verbose: bool = False,
    branch: str | None = None,
    force: bool = False,
    yes: bool = False,
    pull: bool = False,
    json_output: bool = False,
) -> RunConfig:
    """Validate command-line values and build the frozen RunConfig."""
    if operation in (Operation.SWITCH, Operation.PRUNE):
        branch = (branch or "").strip()
        if not branch:
            raise ConfigurationError("Missing required argument: --branch <branch-name>")
    if operation == Operation.PRUNE and json_output and not yes:
        raise ConfigurationError("--json cannot prompt for confirmation; add --yes")

    base_dir = (directory if directory is not None else resolve_default_base_dir()).expanduser()
    if not base_dir.is_dir():
        raise BaseDirectoryNotFoundError(f"The directory '{base_dir}' does not exist.")

    return RunConfig(
        base_dir=base_dir.resolve(),
        dry_run=dry_run,
        verbose=verbose,
        target_branch=branch or None,
        force_delete=force,
        skip_confirm=yes,
        pull_after_switch=pull,
        json_output=json_output,
    )


def configure_logging(console: Console, verbose: bool = False) -> None:
    """Route the git_bulk logger through rich on the report console."""
    handler = RichHandler(console=console, show_time=False, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


# =============================================================================
# CLI Application
# =============================================================================


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

app = typer.Typer(
    name="git-bulk",
    help="Apply one Git operation to every repository under a directory.",
    no_args_is_help=True,
    context_settings=CONTEXT_SETTINGS,
    add_completion=False,
)

err_console = Console(stderr=True)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-bulk {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """git-bulk: Apply one Git operation to every repository under a directory."""


def get_console_and_formatter(json_output: bool, verbose: bool = False) -> tuple[Console, OutputFormatter]:
    """Create console and formatter, and route logging to the console.

    With JSON output, stdout carries only the JSON document; log records go
    to stderr instead.
    """
    console = Console(highlight=False)
    configure_logging(err_console if json_output else console, verbose=verbose)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def _fail_configuration(error: ConfigurationError):
    err_console.print(f"[red]Error: {escape(str(error))}[/]", soft_wrap=True)
    raise typer.Exit(1)


def _execute(operation: Operation, config: RunConfig, formatter: OutputFormatter) -> None:
    runner = BulkRunner(
        config,
        OPERATIONS[operation](config),
        on_report=None if config.json_output else formatter.print_repository_report,
    )
    formatter.print_run_header(operation, config)
    try:
        summary = runner.run()
    except BaseDirectoryNotFoundError as e:
        _fail_configuration(e)
    formatter.print_run_summary(summary, runner.reports)
    raise typer.Exit(summary.exit_code)


DirOption = typer.Option(
    None,
    "--dir",
    "-d",
    help="Base directory to scan (default: $GIT_BULK_DIR, config file, or current directory)",
)
JsonOption = typer.Option(False, "--json", "-j", help="Output as JSON")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Show every git command and skipped path")
DryRunOption = typer.Option(
    False, "--dry-run", "-n", help="Show what would be done without changing any repository"
)
BranchOption = typer.Option(None, "--branch", "-b", help="Target branch name (required)")


@app.command()
def sync(
    directory: Path = DirOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
    json_output: bool = JsonOption,
):
    """Fetch all remotes and fast-forward every tracked branch.

    Repositories with uncommitted changes, a detached HEAD or no remotes are
    skipped. The originally checked-out branch is restored afterwards.
    """
    console, formatter = get_console_and_formatter(json_output, verbose)
    try:
        ensure_git_available()
        config = build_run_config(
            Operation.SYNC, directory, dry_run=dry_run, verbose=verbose, json_output=json_output
        )
    except ConfigurationError as e:
        _fail_configuration(e)
    _execute(Operation.SYNC, config, formatter)


@app.command()
def switch(
    branch: str = BranchOption,
    directory: Path = DirOption,
    pull: bool = typer.Option(
        False, "--pull", "-p", help="Fast-forward pull after switching (or when already on the branch)"
    ),
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
    json_output: bool = JsonOption,
):
    """Switch every repository to a branch, creating it from a remote if needed."""
    console, formatter = get_console_and_formatter(json_output, verbose)
    try:
        config = build_run_config(
            Operation.SWITCH,
            directory,
            branch=branch,
            pull=pull,
            dry_run=dry_run,
            verbose=verbose,
            json_output=json_output,
        )
        ensure_git_available()
    except ConfigurationError as e:
        _fail_configuration(e)
    _execute(Operation.SWITCH, config, formatter)


@app.command()
def prune(
    branch: str = BranchOption,
    directory: Path = DirOption,
    force: bool = typer.Option(False, "--force", "-f", help="Force delete (git branch -D)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    verbose: bool = VerboseOption,
    json_output: bool = JsonOption,
):
    """Delete a local branch in every repository.

    The checked-out branch is never deleted, even with --force.
    """
    console, formatter = get_console_and_formatter(json_output, verbose)
    try:
        config = build_run_config(
            Operation.PRUNE,
            directory,
            branch=branch,
            force=force,
            yes=yes,
            verbose=verbose,
            json_output=json_output,
        )
        ensure_git_available()
    except ConfigurationError as e:
        _fail_configuration(e)

    if not config.skip_confirm:
        mode = "force delete" if config.force_delete else "delete"
        try:
            confirmed = typer.confirm(
                f"{mode.capitalize()} local branch '{config.target_branch}' "
                f"in every repository under {config.base_dir}?",
                default=False,
                err=True,
            )
        except click.exceptions.Abort:
            confirmed = False
        if not confirmed:
            err_console.print("[yellow]Aborted. No repositories were touched.[/]")
            raise typer.Exit(0)

    _execute(Operation.PRUNE, config, formatter)


@app.command(name="list")
def list_repos(
    directory: Path = DirOption,
    verbose: bool = VerboseOption,
    json_output: bool = JsonOption,
):
    """List the repositories a bulk operation would visit."""
    console, formatter = get_console_and_formatter(json_output, verbose)
    try:
        ensure_git_available()
        config = build_run_config(Operation.SYNC, directory, verbose=verbose, json_output=json_output)
        repos = list(discover_repositories(config.base_dir))
    except ConfigurationError as e:
        _fail_configuration(e)

    branches = {}
    for repo_path in repos:
        git = GitOperations(repo_path)
        try:
            branches[repo_path] = git.current_branch() if git.is_work_tree() else None
        except RepositoryAccessError:
            branches[repo_path] = None
    formatter.print_repo_list(repos, branches, config.base_dir)


# =============================================================================
# Entry points
# =============================================================================


def run(args: list[str] | None = None) -> None:
    """Console entry point: usage errors exit with status 1 instead of 2."""
    command = typer.main.get_command(app)
    try:
        exit_code = command.main(args=args, prog_name="git-bulk", standalone_mode=False)
    except click.exceptions.Abort:
        err_console.print("Aborted.")
        sys.exit(1)
    except click.UsageError as e:
        e.show()
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    sys.exit(exit_code if isinstance(exit_code, int) else 0)


def run_sync() -> None:
    run(["sync", *sys.argv[1:]])


def run_switch() -> None:
    run(["switch", *sys.argv[1:]])


def run_prune() -> None:
    run(["prune", *sys.argv[1:]])
