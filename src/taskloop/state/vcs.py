from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

GitResultKind = Literal["ok", "nothing_to_commit", "not_found", "failed"]

NOTHING_TO_COMMIT_MARKERS = ("nothing to commit", "nothing added to commit", "no changes added")


@dataclass(slots=True, frozen=True)
class GitResult:
    kind: GitResultKind
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


@dataclass(slots=True, frozen=True)
class CommitAuthor:
    name: str
    email: str


@dataclass(slots=True, frozen=True)
class StatusEntry:
    path: str
    index_status: str
    worktree_status: str

    @property
    def staged(self) -> bool:
        return self.index_status not in {" ", "?", "!"}


@dataclass(slots=True, frozen=True)
class CommitInfo:
    commit_hash: str
    subject: str


class GitRepository:
    """Thin wrapper over the git binary for commits and boundary tags."""

    def __init__(self, repo_root: Path, *, binary: str = "git") -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary

    def _run_git(
        self,
        args: list[str],
        *,
        author: CommitAuthor | None = None,
    ) -> subprocess.CompletedProcess[str]:
        identity: list[str] = []
        if author is not None:
            identity = ["-c", f"user.name={author.name}", "-c", f"user.email={author.email}"]
        return subprocess.run(
            [self.binary, "--no-pager", *identity, *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )

    @staticmethod
    def _failure(proc: subprocess.CompletedProcess[str]) -> GitResult:
        return GitResult("failed", proc.stderr.strip() or proc.stdout.strip())

    def is_repository(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"])
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def ensure_initialized(self) -> GitResult:
        if self.is_repository():
            return GitResult("ok", "already initialized")
        proc = self._run_git(["init"])
        if proc.returncode != 0:
            return self._failure(proc)
        return GitResult("ok", proc.stdout.strip())

    def add_all(self) -> GitResult:
        proc = self._run_git(["add", "--all"])
        if proc.returncode != 0:
            return self._failure(proc)
        return GitResult("ok")

    def status_matrix(self) -> list[StatusEntry]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        if proc.returncode != 0:
            return []
        entries: list[StatusEntry] = []
        for line in proc.stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", maxsplit=1)[1].strip()
            entries.append(StatusEntry(path=path, index_status=line[0], worktree_status=line[1]))
        return entries

    def has_staged_changes(self) -> bool:
        return any(entry.staged for entry in self.status_matrix())

    def commit(self, message: str, author: CommitAuthor) -> GitResult:
        if not self.has_staged_changes():
            return GitResult("nothing_to_commit")
        proc = self._run_git(
            [
                "commit",
                "--no-verify",
                "-m",
                message,
                f"--author={author.name} <{author.email}>",
            ],
            author=author,
        )
        if proc.returncode != 0:
            output = f"{proc.stdout}\n{proc.stderr}".lower()
            if any(marker in output for marker in NOTHING_TO_COMMIT_MARKERS):
                return GitResult("nothing_to_commit")
            return self._failure(proc)
        return GitResult("ok", self.rev_parse("HEAD") or "")

    def commit_all(self, message: str, author: CommitAuthor) -> GitResult:
        staged = self.add_all()
        if not staged.ok:
            return staged
        return self.commit(message, author)

    def rev_parse(self, ref: str) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def tag(self, name: str) -> GitResult:
        if self.rev_parse("HEAD") is None:
            return GitResult("not_found", "HEAD does not point to a commit yet")
        proc = self._run_git(["tag", "-f", name])
        if proc.returncode != 0:
            return self._failure(proc)
        return GitResult("ok", name)

    def list_tags(self, pattern: str | None = None) -> list[str]:
        args = ["tag", "--list"]
        if pattern:
            args.append(pattern)
        proc = self._run_git(args)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def log(self, depth: int = 10) -> list[CommitInfo]:
        proc = self._run_git(["log", f"-n{max(1, depth)}", "--pretty=format:%H%x09%s"])
        if proc.returncode != 0 or not proc.stdout.strip():
            return []
        commits: list[CommitInfo] = []
        for line in proc.stdout.splitlines():
            commit_hash, _, subject = line.partition("\t")
            commits.append(CommitInfo(commit_hash=commit_hash.strip(), subject=subject.strip()))
        return commits

    def tracked_files(self) -> list[str]:
        proc = self._run_git(["ls-files"])
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
