"""In-memory last-known status per stack.

Concurrency model: each stack's entry is written only by the worker
currently processing that stack, but different stacks are written
concurrently. Writers replace whole StackStatus objects under a single map
lock; readers take a lock-free shallow copy of the map, so a reader sees
either the old or the new status of a stack, never a half-written one.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, replace
from datetime import UTC
from types import MappingProxyType
from typing import Any

from .ledger import StackMetadata

logger = logging.getLogger(__name__)


def format_deployed_at(metadata: StackMetadata) -> str:
    """Format a deployment timestamp the way operators see it (RFC 3339)."""
    if not metadata.is_deployed:
        return ""
    return metadata.deployed_at.astimezone(UTC).isoformat(timespec="seconds").replace(
        "+00:00", "Z"
    )


@dataclass(frozen=True)
class StackStatus:
    """Last-known status of one stack."""

    error: str = ""
    revision: str = ""
    deployed_stack_revision: str = ""
    deployed_at: str = ""

    @classmethod
    def from_metadata(cls, metadata: StackMetadata) -> StackStatus:
        """Status reflecting a ledger record, with no error."""
        return cls(
            revision=metadata.repo_revision,
            deployed_stack_revision=metadata.deployed_stack_revision,
            deployed_at=format_deployed_at(metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StatusRegistry:
    """Process-wide map from stack name to StackStatus."""

    def __init__(self) -> None:
        self._statuses: dict[str, StackStatus] = {}
        self._lock = threading.Lock()

    def reset(
        self,
        stack_names: Iterable[str],
        seed: Callable[[str], StackStatus] | None = None,
    ) -> None:
        """Re-initialize the map for a new stack set.

        Only called at cycle boundaries, when no worker is running. Stacks
        that remain keep their current entry, new stacks get seed(name)
        (or an empty status) and removed stacks are dropped.
        """
        with self._lock:
            previous = self._statuses
            fresh: dict[str, StackStatus] = {}
            for name in stack_names:
                if name in previous:
                    fresh[name] = previous[name]
                else:
                    fresh[name] = seed(name) if seed else StackStatus()
            self._statuses = fresh

        logger.debug("Status registry reset", extra={"stacks": len(fresh)})

    def get(self, stack_name: str) -> StackStatus:
        """Current status of a stack (empty status if unknown)."""
        return self._statuses.get(stack_name, StackStatus())

    def record_deployment(self, stack_name: str, metadata: StackMetadata) -> None:
        """Overwrite a stack's status after a successful deployment."""
        self._put(stack_name, StackStatus.from_metadata(metadata))

    def record_error(self, stack_name: str, message: str) -> None:
        """Overwrite only the error field of a stack's status."""
        with self._lock:
            current = self._statuses.get(stack_name, StackStatus())
            self._statuses[stack_name] = replace(current, error=message)

    def snapshot(self) -> MappingProxyType[str, StackStatus]:
        """Read-only copy of the whole map, safe to call at any time.

        May observe a cycle in progress.
        """
        return MappingProxyType(dict(self._statuses))

    def _put(self, stack_name: str, status: StackStatus) -> None:
        with self._lock:
            self._statuses[stack_name] = status
