"""Controller context: the state one controller process owns.

The context holds the current configuration snapshot and everything derived
from it (stack reconcilers, repo locks, status entries) plus the revision
ledger. Derived state is rebuilt as a whole from each successfully loaded
snapshot and swapped in at a cycle boundary, so a failed reload leaves the
previous snapshot, locks and stacks in effect.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from types import MappingProxyType

from .config import Settings
from .config_loader import ConfigLoadError, load_configs
from .ledger import LedgerError, RevisionLedger
from .locks import RepoLockRegistry
from .models import ControllerConfig
from .repo import GitRepository
from .stack import StackReconciler, SwarmStack
from .status import StackStatus, StatusRegistry

logger = logging.getLogger(__name__)

StackFactory = Callable[[ControllerConfig, RevisionLedger], Mapping[str, StackReconciler]]


def build_swarm_stacks(
    snapshot: ControllerConfig, ledger: RevisionLedger
) -> dict[str, StackReconciler]:
    """Create one SwarmStack per configured stack, sharing repo checkouts."""
    repos_path = Path(snapshot.repos_path)
    repos = {
        name: GitRepository(name, repo_config, repos_path)
        for name, repo_config in snapshot.repos.items()
    }
    return {
        name: SwarmStack(name, stack_config, repos[stack_config.repo], ledger)
        for name, stack_config in snapshot.stacks.items()
    }


class ControllerContext:
    """Explicitly owned controller state, passed to the scheduler."""

    def __init__(
        self,
        loader: Callable[[], ControllerConfig],
        ledger: RevisionLedger,
        stack_factory: StackFactory = build_swarm_stacks,
    ) -> None:
        """Create an empty context; call load() before scheduling.

        Args:
            loader: Returns a fresh snapshot, raising ConfigLoadError on failure.
            ledger: Initialized revision ledger shared by all stacks.
            stack_factory: Builds stack reconcilers for a snapshot.
        """
        self._loader = loader
        self._ledger = ledger
        self._stack_factory = stack_factory
        self._snapshot: ControllerConfig | None = None
        self._stacks: Mapping[str, StackReconciler] = MappingProxyType({})
        self._repo_locks = RepoLockRegistry({})
        self._statuses = StatusRegistry()

    @classmethod
    def from_settings(cls, settings: Settings, ledger: RevisionLedger) -> ControllerContext:
        """Create a context reading configuration files from settings.configs_path."""

        def loader() -> ControllerConfig:
            return load_configs(settings.configs_path, settings.concurrency_override)

        return cls(loader, ledger)

    @property
    def ledger(self) -> RevisionLedger:
        return self._ledger

    @property
    def snapshot(self) -> ControllerConfig:
        if self._snapshot is None:
            raise RuntimeError("Controller configuration has not been loaded")
        return self._snapshot

    @property
    def stacks(self) -> Mapping[str, StackReconciler]:
        return self._stacks

    @property
    def repo_locks(self) -> RepoLockRegistry:
        return self._repo_locks

    @property
    def statuses(self) -> StatusRegistry:
        return self._statuses

    def stack_statuses(self) -> Mapping[str, StackStatus]:
        """Snapshot of every stack's last-known status, for reporting."""
        return self._statuses.snapshot()

    def load(self) -> None:
        """Load the initial snapshot.

        Raises:
            ConfigLoadError: If the configuration cannot be loaded.
        """
        self._apply(self._loader())

    def reload(self) -> bool:
        """Reload configuration at a cycle boundary.

        Returns:
            True if the new snapshot is in effect, False if the previous one
            was kept.
        """
        try:
            snapshot = self._loader()
        except ConfigLoadError as e:
            logger.error(
                "Configuration reload failed, keeping previous configuration",
                extra={"error": str(e)},
            )
            return False

        try:
            self._apply(snapshot)
        except Exception as e:
            logger.exception(
                "Failed to apply reloaded configuration, keeping previous configuration",
                extra={"error": str(e)},
            )
            return False
        return True

    def _apply(self, snapshot: ControllerConfig) -> None:
        stacks = dict(self._stack_factory(snapshot, self._ledger))
        repo_locks = RepoLockRegistry.build(snapshot.repos)

        self._statuses.reset(stacks, seed=self._seed_status)
        self._snapshot = snapshot
        self._stacks = MappingProxyType(stacks)
        self._repo_locks = repo_locks

        logger.info(
            "Configuration applied",
            extra={"stacks": sorted(stacks), "repos": sorted(snapshot.repos)},
        )

    def _seed_status(self, stack_name: str) -> StackStatus:
        try:
            return StackStatus.from_metadata(self._ledger.load(stack_name))
        except LedgerError as e:
            logger.warning(
                "Could not seed stack status from ledger",
                extra={"stack": stack_name, "error": str(e)},
            )
            return StackStatus()
