"""
Source backends: read-only access to version-controlled configuration.

A backend resolves a (repository, revision) pair to an immutable content
hash and returns the files under a path at that hash. Failures of any kind
surface as SourceUnavailable.
"""

import asyncio
import hashlib
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

import structlog

from gitops_kernel.errors import SourceUnavailable

logger = structlog.get_logger(__name__)

# Looks up a token for a repository URL. Provided by an external credential store.
CredentialStore = Callable[[str], Optional[str]]

_COMMIT_SHA = re.compile(r"^[0-9a-f]{40}$")


def _normalize_path(path: str) -> str:
    path = path.strip().strip("/")
    return "" if path in ("", ".") else path


def _relative_files(files: Dict[str, str], path: str) -> Dict[str, str]:
    """Files under `path`, keyed relative to it."""
    prefix = _normalize_path(path)
    if not prefix:
        return dict(files)
    result = {}
    for name, text in files.items():
        if name.startswith(prefix + "/"):
            result[name[len(prefix) + 1:]] = text
    return result


class SourceBackend(Protocol):
    """Pluggable source access."""

    async def resolve(self, repo_url: str, revision: str) -> str: ...

    async def fetch(self, repo_url: str, content_hash: str, path: str) -> Dict[str, str]: ...


class InMemorySource:
    """
    Repositories held in process. Each commit is a full file tree; refs
    point at commit hashes. Used for tests and local experiments.
    """

    def __init__(self):
        self._refs: Dict[str, Dict[str, str]] = {}
        self._commits: Dict[str, Dict[str, str]] = {}
        self._available = True
        self.resolve_calls = 0

    def commit(
        self, repo_url: str, files: Dict[str, str], revision: str = "HEAD"
    ) -> str:
        """Record a commit and move `revision` to it. Returns the commit hash."""
        digest = hashlib.sha1()
        digest.update(repo_url.encode())
        for name in sorted(files):
            digest.update(name.encode())
            digest.update(b"\0")
            digest.update(files[name].encode())
            digest.update(b"\0")
        commit_hash = digest.hexdigest()
        self._commits[commit_hash] = dict(files)
        self._refs.setdefault(repo_url, {})[revision] = commit_hash
        return commit_hash

    def set_available(self, available: bool) -> None:
        self._available = available

    async def resolve(self, repo_url: str, revision: str) -> str:
        self.resolve_calls += 1
        if not self._available:
            raise SourceUnavailable(f"repository {repo_url} is unreachable")
        if revision in self._commits:
            return revision
        refs = self._refs.get(repo_url)
        if refs is None:
            raise SourceUnavailable(f"repository {repo_url} not found")
        if revision not in refs:
            raise SourceUnavailable(f"revision {revision} not found in {repo_url}")
        return refs[revision]

    async def fetch(self, repo_url: str, content_hash: str, path: str) -> Dict[str, str]:
        if not self._available:
            raise SourceUnavailable(f"repository {repo_url} is unreachable")
        files = self._commits.get(content_hash)
        if files is None:
            raise SourceUnavailable(f"commit {content_hash} not found in {repo_url}")
        return _relative_files(files, path)


class GitSource:
    """
    Git repositories accessed through the `git` CLI.

    Revisions are resolved with `git ls-remote`; content is read from a bare
    mirror kept under `cache_dir`, so a fetch never touches a working tree.
    """

    def __init__(
        self,
        cache_dir: str = "./.gitops-cache",
        credentials: Optional[CredentialStore] = None,
        git_binary: str = "git",
    ):
        self.cache_dir = Path(cache_dir)
        self.credentials = credentials
        self.git_binary = git_binary

    def _auth_args(self, repo_url: str) -> List[str]:
        if self.credentials is None:
            return []
        token = self.credentials(repo_url)
        if not token:
            return []
        return ["-c", f"http.extraHeader=Authorization: Bearer {token}"]

    async def _git(self, *args: str, repo_url: str, cwd: Optional[Path] = None) -> str:
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *self._auth_args(repo_url),
                *args,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise SourceUnavailable(f"git binary {self.git_binary!r} not found")
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise SourceUnavailable(
                f"git {args[0]} failed for {repo_url}: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")

    def _mirror_dir(self, repo_url: str) -> Path:
        return self.cache_dir / hashlib.sha256(repo_url.encode()).hexdigest()[:16]

    async def resolve(self, repo_url: str, revision: str) -> str:
        if _COMMIT_SHA.match(revision):
            return revision
        output = await self._git("ls-remote", repo_url, revision, repo_url=repo_url)
        refs = {}
        for line in output.splitlines():
            parts = line.split()
            if len(parts) == 2:
                refs[parts[1]] = parts[0]
        for candidate in (revision, f"refs/heads/{revision}", f"refs/tags/{revision}^{{}}",
                          f"refs/tags/{revision}"):
            if candidate in refs:
                return refs[candidate]
        if refs:
            return next(iter(refs.values()))
        raise SourceUnavailable(f"revision {revision} not found in {repo_url}")

    async def _ensure_commit(self, repo_url: str, content_hash: str) -> Path:
        mirror = self._mirror_dir(repo_url)
        if not mirror.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.info("git_mirror_clone", repo_url=repo_url, mirror=str(mirror))
            await self._git("clone", "--mirror", "--quiet", repo_url, str(mirror),
                            repo_url=repo_url)
        try:
            await self._git("cat-file", "-e", f"{content_hash}^{{commit}}",
                            repo_url=repo_url, cwd=mirror)
        except SourceUnavailable:
            await self._git("remote", "update", "--prune", repo_url=repo_url, cwd=mirror)
            await self._git("cat-file", "-e", f"{content_hash}^{{commit}}",
                            repo_url=repo_url, cwd=mirror)
        return mirror

    async def fetch(self, repo_url: str, content_hash: str, path: str) -> Dict[str, str]:
        mirror = await self._ensure_commit(repo_url, content_hash)
        prefix = _normalize_path(path)
        args = ["ls-tree", "-r", "--name-only", content_hash]
        if prefix:
            args += ["--", prefix]
        listing = await self._git(*args, repo_url=repo_url, cwd=mirror)

        files = {}
        for name in listing.splitlines():
            if not name:
                continue
            files[name] = await self._git("show", f"{content_hash}:{name}",
                                          repo_url=repo_url, cwd=mirror)
        return _relative_files(files, path)
