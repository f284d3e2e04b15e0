"""Repository and branch lookup for session working directories."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sessionpulse import config
from sessionpulse.models import RepoInfo

logger = logging.getLogger("sessionpulse.repo_info")

GitRunner = Callable[[str, list[str]], Awaitable[Optional[str]]]

_SCP_REMOTE_PATTERN = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")
_URL_REMOTE_PATTERN = re.compile(r"^(?:[a-z+]+)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.+)$", re.IGNORECASE)


@dataclass
class ParsedRemote:
    """Components of a git remote URL.

    Attributes:
        host: Remote host, e.g. github.com
        owner: Account or organization
        repo: Repository name without a .git suffix
    """

    host: str
    owner: str
    repo: str

    @property
    def web_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}"

    @property
    def repo_id(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_remote_url(remote: str) -> ParsedRemote | None:
    """Parse the remote forms git accepts.

    Examples:
        >>> parse_remote_url("git@github.com:acme/widgets.git").web_url
        'https://github.com/acme/widgets'
        >>> parse_remote_url("https://github.com/acme/widgets").repo_id
        'acme/widgets'
    """
    cleaned = remote.strip().removeprefix("git+")
    if not cleaned:
        return None
    match = _URL_REMOTE_PATTERN.match(cleaned) or _SCP_REMOTE_PATTERN.match(cleaned)
    if not match:
        return None
    parts = [p for p in match.group("path").strip("/").split("/") if p]
    if len(parts) < 2:
        return None
    owner = "/".join(parts[:-1])
    repo = parts[-1].removesuffix(".git")
    if not repo:
        return None
    return ParsedRemote(host=match.group("host").lower(), owner=owner, repo=repo)


async def run_git(cwd: str, args: list[str]) -> str | None:
    """Run a git command in ``cwd``; None on any failure or timeout."""
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            "-C",
            cwd,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.debug("git unavailable for %s: %s", cwd, exc)
        return None
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=config.GIT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("git %s timed out in %s", " ".join(args), cwd)
        return None
    if process.returncode != 0:
        return None
    return stdout.decode("utf-8", errors="replace").strip()


class RepoInfoResolver:
    """TTL-cached repository lookups keyed by working directory."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        runner: GitRunner = run_git,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = config.REPO_INFO_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._runner = runner
        self._clock = clock
        self._cache: dict[str, tuple[RepoInfo, float]] = {}
        self._inflight: dict[str, asyncio.Task[RepoInfo]] = {}

    async def get(self, cwd: str) -> RepoInfo:
        cached = self._cache.get(cwd)
        if cached and self._clock() - cached[1] < self.ttl_seconds:
            return cached[0]

        task = self._inflight.get(cwd)
        if task is None:
            task = asyncio.create_task(self._lookup(cwd))
            self._inflight[cwd] = task
            try:
                info = await task
            finally:
                self._inflight.pop(cwd, None)
            self._cache[cwd] = (info, self._clock())
            return info
        return await asyncio.shield(task)

    def invalidate(self, cwd: str | None = None) -> None:
        if cwd is None:
            self._cache.clear()
        else:
            self._cache.pop(cwd, None)

    async def _lookup(self, cwd: str) -> RepoInfo:
        branch = await self._runner(cwd, ["rev-parse", "--abbrev-ref", "HEAD"])
        if branch is None:
            return RepoInfo()
        remote = await self._runner(cwd, ["remote", "get-url", "origin"])
        parsed = parse_remote_url(remote) if remote else None
        return RepoInfo(
            repoUrl=parsed.web_url if parsed else None,
            repoId=parsed.repo_id if parsed else None,
            branch=branch if branch and branch != "HEAD" else None,
            isGitRepo=True,
        )
