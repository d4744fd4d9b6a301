"""Git checkouts backing stacks.

Each configured repository gets one working tree under repos_path. The
checkout is shared by every stack that references the repository, which is
why callers must hold the repository's lock (see locks.py) while syncing
and reading from it.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from .config import GIT_TIMEOUT_SECONDS
from .models import RepoConfig

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when a git operation fails."""

    pass


def _read_password(config: RepoConfig) -> str | None:
    if config.password_file:
        try:
            return Path(config.password_file).read_text(encoding="utf-8").strip()
        except OSError as e:
            raise RepositoryError(
                f"Failed to read password file {config.password_file}: {e}"
            ) from e
    return config.password


def authenticated_url(config: RepoConfig) -> tuple[str, str | None]:
    """Build the clone URL, embedding credentials for HTTP(S) remotes.

    Returns:
        Tuple of (url, secret) where secret is the password to scrub from
        any command output, or None.
    """
    password = _read_password(config)
    if not config.username or not password:
        return config.url, None

    parts = urlsplit(config.url)
    if parts.scheme not in ("http", "https"):
        logger.warning(
            "Credentials are only applied to HTTP(S) repo URLs",
            extra={"scheme": parts.scheme},
        )
        return config.url, None

    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(config.username, safe='')}:{quote(password, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment)), password


class GitRepository:
    """A working tree for one configured repository."""

    def __init__(
        self,
        name: str,
        config: RepoConfig,
        repos_path: Path,
        timeout: int = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._name = name
        self._config = config
        self._path = repos_path / name
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path:
        return self._path

    def sync(self, branch: str) -> str:
        """Bring the working tree to the tip of origin/branch.

        Clones on first use, otherwise fetches and hard-resets so local
        modifications never survive.

        Returns:
            The checked-out revision.

        Raises:
            RepositoryError: If any git command fails.
        """
        url, secret = authenticated_url(self._config)

        if not (self._path / ".git").exists():
            logger.info(
                "Cloning repository",
                extra={"repo": self._name, "branch": branch, "path": str(self._path)},
            )
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._git(
                "clone", "--branch", branch, url, str(self._path), cwd=self._path.parent, secret=secret
            )
        else:
            self._git("remote", "set-url", "origin", url, secret=secret)
            self._git("fetch", "--prune", "origin", branch, secret=secret)
            self._git("checkout", "--force", "-B", branch, f"origin/{branch}")
            self._git("reset", "--hard", f"origin/{branch}")

        revision = self.head_revision()
        logger.debug("Repository synced", extra={"repo": self._name, "revision": revision})
        return revision

    def head_revision(self) -> str:
        return self._git("rev-parse", "HEAD")

    def last_commit_for(self, *paths: str) -> str:
        """Revision of the last commit that touched any of paths."""
        revision = self._git("log", "-1", "--format=%H", "--", *paths)
        if not revision:
            raise RepositoryError(f"No commit found for {', '.join(paths)} in repo {self._name}")
        return revision

    def _git(self, *args: str, cwd: Path | None = None, secret: str | None = None) -> str:
        cmd = ["git", *args]
        env = os.environ.copy()
        # Never block on a credential prompt
        env["GIT_TERMINAL_PROMPT"] = "0"

        def scrub(text: str) -> str:
            if secret:
                text = text.replace(secret, "***").replace(quote(secret, safe=""), "***")
            return text

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd or self._path,
                env=env,
                timeout=self._timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RepositoryError(
                f"git {args[0]} timed out after {self._timeout}s in repo {self._name}"
            ) from e
        except FileNotFoundError as e:
            raise RepositoryError("git executable not found") from e

        if result.returncode != 0:
            raise RepositoryError(
                f"git {args[0]} failed in repo {self._name}: {scrub(result.stderr.strip())}"
            )
        return result.stdout.strip()
