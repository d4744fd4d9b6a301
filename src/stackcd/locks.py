"""Per-repository mutual exclusion.

Stacks that share a repository share one checkout on disk, so at most one
reconciliation may touch a repository at any instant, however many stacks
reference it and however many workers are running. Locks are keyed by the
repository's configured name, never by stack name.

A registry is built from one configuration snapshot and never mutated. A
reload builds a new registry and the old one is dropped with its locks.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from types import MappingProxyType

logger = logging.getLogger(__name__)


class UnknownRepoError(LookupError):
    """Raised when a lock is requested for a repository not in the registry."""

    pass


class RepoLockRegistry:
    """Immutable map from repository identity to its lock.

    Usage:
        locks = RepoLockRegistry.build(snapshot.repos)
        with locks.hold("infra"):
            stack.reconcile(status)
    """

    def __init__(self, locks: dict[str, threading.Lock]) -> None:
        self._locks = MappingProxyType(dict(locks))

    @classmethod
    def build(cls, repo_names: Iterable[str]) -> RepoLockRegistry:
        """Create a registry with one fresh lock per distinct repository."""
        registry = cls({name: threading.Lock() for name in repo_names})
        logger.debug("Built repo lock registry", extra={"repos": sorted(registry.repos)})
        return registry

    @property
    def repos(self) -> frozenset[str]:
        return frozenset(self._locks)

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, repo_name: object) -> bool:
        return repo_name in self._locks

    def lock_for(self, repo_name: str) -> threading.Lock:
        """Get the lock guarding a repository.

        Raises:
            UnknownRepoError: If the repository is not configured.
        """
        try:
            return self._locks[repo_name]
        except KeyError as e:
            raise UnknownRepoError(f"no lock registered for repo {repo_name!r}") from e

    @contextmanager
    def hold(self, repo_name: str) -> Iterator[None]:
        """Hold a repository's lock for the duration of the block.

        Blocks while another worker holds it; released on every exit path.
        """
        lock = self.lock_for(repo_name)
        with lock:
            yield
