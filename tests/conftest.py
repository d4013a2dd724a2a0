"""Shared fixtures: an in-memory git double and a real-git sandbox."""

import shutil
import subprocess
from pathlib import Path

import pytest

from git_bulk.core import GitCommandError

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


# =============================================================================
# In-memory git
# =============================================================================


class FakeGit:
    """Stand-in for GitOperations that keeps repository state in memory.

    ``branches`` maps local branch name to its upstream (or None). ``fail``
    maps a mutating method name to the set of arguments it should reject.
    Every mutating call is appended to ``calls``.
    """

    def __init__(
        self,
        repo_path=Path("/repos/demo"),
        *,
        valid=True,
        has_commits=True,
        current="main",
        dirty=False,
        remotes=("origin",),
        branches=None,
        ahead=None,
        behind=None,
        unique=None,
        gone=(),
        remote_branches=None,
        unmerged=(),
        fail=None,
        pull_count=0,
    ):
        self.repo_path = repo_path
        self.valid = valid
        self._has_commits = has_commits
        self.current = current
        self.dirty = dirty
        self._remotes = list(remotes)
        self.branches = dict(branches if branches is not None else {"main": "origin/main"})
        self.ahead = dict(ahead or {})
        self.behind = dict(behind or {})
        self.unique = dict(unique or {})
        self.gone = set(gone)
        self.remote_branches = {k: set(v) for k, v in (remote_branches or {}).items()}
        self.unmerged = set(unmerged)
        self.fail = {k: set(v) for k, v in (fail or {}).items()}
        self.pull_count = pull_count
        self.calls = []

    def _maybe_fail(self, name, arg, stderr=None):
        if arg in self.fail.get(name, ()):
            raise GitCommandError([name, arg], 1, stderr or f"fatal: {name} {arg} rejected")

    # -- queries --------------------------------------------------------------

    def is_work_tree(self):
        return self.valid

    def has_commits(self):
        return self._has_commits

    def current_branch(self):
        return self.current

    def has_uncommitted_changes(self):
        return self.dirty

    def remotes(self):
        return list(self._remotes)

    def local_branches(self):
        return list(self.branches)

    def tracking_branches(self):
        return [(b, u) for b, u in self.branches.items() if u]

    def upstream_of(self, branch):
        return self.branches.get(branch)

    def ref_exists(self, ref):
        return ref not in self.gone

    def ahead_behind(self, branch, upstream):
        return self.ahead.get(branch, 0), self.behind.get(branch, 0)

    def unique_commits(self, branch, upstream):
        return list(self.unique.get(branch, []))

    def remote_has_branch(self, remote, branch):
        self.calls.append(("ls-remote", remote, branch))
        return branch in self.remote_branches.get(remote, set())

    def head_commit(self):
        return "0" * 40

    # -- mutations ------------------------------------------------------------

    def fetch(self, remote):
        self.calls.append(("fetch", remote))
        self._maybe_fail("fetch", remote)

    def checkout(self, branch):
        self.calls.append(("checkout", branch))
        self._maybe_fail("checkout", branch)
        self.current = branch

    def merge_fast_forward(self, upstream):
        self.calls.append(("merge", upstream))
        self._maybe_fail("merge", upstream, "fatal: Not possible to fast-forward, aborting.")
        self.behind[self.current] = 0

    def create_tracking_branch(self, branch, remote):
        self.calls.append(("create", branch, remote))
        self._maybe_fail("create", branch)
        self.branches[branch] = f"{remote}/{branch}"
        self.current = branch

    def pull_fast_forward(self):
        self.calls.append(("pull", self.current))
        self._maybe_fail("pull", self.current)
        return self.pull_count

    def delete_branch(self, branch, force=False):
        self.calls.append(("delete", branch, force))
        if not force and branch in self.unmerged:
            raise GitCommandError(
                ["branch", "-d", branch], 1, f"error: the branch '{branch}' is not fully merged"
            )
        self._maybe_fail("delete", branch)
        del self.branches[branch]

    @property
    def mutations(self):
        return [c for c in self.calls if c[0] != "ls-remote"]


@pytest.fixture
def fake_git():
    return FakeGit


# =============================================================================
# Real git sandbox
# =============================================================================


class GitSandbox:
    """Throw-away remotes and clones under one temporary directory."""

    def __init__(self, root: Path):
        self.root = root
        self.workspace = root / "workspace"
        self.remotes_dir = root / "remotes"
        self.workspace.mkdir()
        self.remotes_dir.mkdir()
        self._counter = 0

    def git(self, cwd, *args):
        result = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
        )
        return result.stdout.strip()

    def commit(self, repo, message=None):
        self._counter += 1
        message = message or f"change {self._counter}"
        (repo / f"file{self._counter}.txt").write_text(f"{message}\n")
        self.git(repo, "add", "-A")
        self.git(repo, "commit", "-q", "-m", message)
        return self.git(repo, "rev-parse", "HEAD")

    def init(self, path, bare=False):
        path.mkdir(parents=True, exist_ok=True)
        args = ["init", "-q", "-b", "main"]
        if bare:
            args.append("--bare")
        self.git(path, *args)
        return path

    def create_remote(self, name):
        """Create a bare remote plus a seed clone used to publish commits."""
        bare = self.init(self.remotes_dir / f"{name}.git", bare=True)
        seed = self.init(self.remotes_dir / f"{name}-seed")
        self.commit(seed, "initial")
        self.git(seed, "remote", "add", "origin", str(bare))
        self.git(seed, "push", "-q", "-u", "origin", "main")
        return bare, seed

    def clone(self, bare, name):
        target = self.workspace / name
        self.git(self.workspace, "clone", "-q", str(bare), name)
        return target

    def publish(self, seed, count, branch="main"):
        self.git(seed, "checkout", "-q", branch)
        for _ in range(count):
            self.commit(seed)
        self.git(seed, "push", "-q", "origin", branch)

    def current_branch(self, repo):
        return self.git(repo, "symbolic-ref", "HEAD").removeprefix("refs/heads/")

    def branches(self, repo):
        return set(self.git(repo, "for-each-ref", "--format=%(refname:lstrip=2)", "refs/heads/").split())

    def snapshot(self, repo):
        """HEAD ref, branch tips and raw index bytes."""
        git_dir = repo / ".git"
        index = git_dir / "index"
        return (
            (git_dir / "HEAD").read_bytes(),
            self.git(repo, "for-each-ref", "refs/heads/"),
            index.read_bytes() if index.exists() else b"",
        )


@pytest.fixture
def sandbox(tmp_path, monkeypatch):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")
    monkeypatch.delenv("GIT_BULK_DIR", raising=False)
    monkeypatch.delenv("GIT_BULK_CONFIG", raising=False)
    return GitSandbox(tmp_path)
