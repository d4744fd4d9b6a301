"""Concurrent reconciliation scheduler.

Each cycle:
1. Size a worker pool from the snapshot's concurrency setting
2. Start the workers on a bounded queue holding every configured stack
3. Enqueue every stack, then close the queue
4. Wait until every stack has been processed
5. Sleep for the update interval
6. Reload configuration (a failed reload keeps the previous snapshot)

A worker holds the stack's repository lock for the whole reconcile call,
so stacks sharing a checkout never run concurrently while stacks on
different repositories run in parallel. No timeout wraps a reconcile call:
a stuck stack holds its repo lock and one worker until it returns.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import cast

from .config import DEFAULT_CONCURRENCY
from .context import ControllerContext
from .ledger import LedgerError
from .locks import RepoLockRegistry, UnknownRepoError
from .repo import RepositoryError
from .stack import DeploymentError, StackError, StackReconciler

logger = logging.getLogger(__name__)

# Failures raised by the reconcile path; anything else is logged with a traceback
EXPECTED_STACK_ERRORS = (
    DeploymentError,
    LedgerError,
    RepositoryError,
    StackError,
    UnknownRepoError,
)

# Queue sentinel telling a worker there is no more work this cycle
_CLOSED = object()


def get_worker_count(concurrency: int | None) -> int:
    """Resolve the worker pool size, defaulting invalid settings."""
    if concurrency is None or concurrency <= 0:
        logger.warning(
            "Invalid concurrency value, using default",
            extra={"concurrency": concurrency, "default": DEFAULT_CONCURRENCY},
        )
        return DEFAULT_CONCURRENCY
    return concurrency


class StackOutcome(str, Enum):
    """Result of processing one stack in a cycle."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Result of a single reconciliation cycle."""

    worker_count: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: dict[str, StackOutcome] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, stack_name: str, outcome: StackOutcome) -> None:
        with self._lock:
            self.outcomes[stack_name] = outcome

    def count(self, outcome: StackOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Scheduler:
    """Drives reconciliation cycles until shutdown."""

    def __init__(self, context: ControllerContext) -> None:
        self._context = context
        self._shutdown_event = threading.Event()

    @property
    def context(self) -> ControllerContext:
        return self._context

    def run(self) -> None:
        """Run cycles until shutdown() is called.

        Shutdown is only observed between cycles; a running cycle always
        completes.
        """
        logger.info("Starting stackcd scheduler")

        while not self._shutdown_event.is_set():
            self.run_cycle()

            interval = self._context.snapshot.update_interval
            logger.info("Waiting for the update interval", extra={"interval_seconds": interval})
            if self._shutdown_event.wait(timeout=interval):
                break

            logger.info("Checking configuration for new repos or stacks")
            self._context.reload()

        logger.info("Scheduler stopped")

    def shutdown(self) -> None:
        """Signal the scheduler to stop after the current cycle."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def run_cycle(self) -> CycleResult:
        """Process every configured stack exactly once."""
        logger.debug("Starting update loop")

        # Captured once; reloads only happen between cycles
        stacks = list(self._context.stacks.values())
        repo_locks = self._context.repo_locks
        worker_count = get_worker_count(self._context.snapshot.concurrency)
        logger.info(
            "Starting reconciliation cycle",
            extra={"worker_count": worker_count, "stacks": len(stacks)},
        )

        result = CycleResult(worker_count=worker_count)
        # maxsize=0 would mean unbounded
        work: queue.Queue[object] = queue.Queue(maxsize=max(1, len(stacks)))

        workers = [
            threading.Thread(
                target=self._worker,
                args=(work, repo_locks, result),
                name=f"stackcd-worker-{i}",
                daemon=True,
            )
            for i in range(worker_count)
        ]
        for worker in workers:
            worker.start()

        for stack in stacks:
            logger.debug("Queueing stack for update", extra={"stack": stack.name})
            work.put(stack)
        for _ in workers:
            work.put(_CLOSED)

        work.join()
        for worker in workers:
            worker.join()

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _worker(
        self,
        work: queue.Queue[object],
        repo_locks: RepoLockRegistry,
        result: CycleResult,
    ) -> None:
        while True:
            item = work.get()
            try:
                if item is _CLOSED:
                    return
                stack = cast(StackReconciler, item)
                result.record(stack.name, self.process_stack(stack, repo_locks))
            finally:
                work.task_done()

    def process_stack(self, stack: StackReconciler, repo_locks: RepoLockRegistry) -> StackOutcome:
        """Reconcile one stack under its repo lock and record the outcome.

        Failures are isolated here: they land in the stack's status entry
        and the log, never in the caller.
        """
        statuses = self._context.statuses
        status = statuses.get(stack.name)

        try:
            with repo_locks.hold(stack.repo_name):
                logger.debug("Checking if stack needs to be updated", extra={"stack": stack.name})
                metadata = stack.reconcile(status)
        except EXPECTED_STACK_ERRORS as e:
            logger.error(
                "Stack reconciliation failed",
                extra={"stack": stack.name, "repo": stack.repo_name, "error": str(e)},
            )
            statuses.record_error(stack.name, str(e) or type(e).__name__)
            return StackOutcome.FAILED
        except Exception as e:
            logger.exception(
                "Stack reconciliation failed unexpectedly",
                extra={"stack": stack.name, "repo": stack.repo_name, "error_type": type(e).__name__},
            )
            statuses.record_error(stack.name, str(e) or type(e).__name__)
            return StackOutcome.FAILED

        if metadata is None:
            logger.debug("Stack is up to date", extra={"stack": stack.name})
            return StackOutcome.UNCHANGED

        statuses.record_deployment(stack.name, metadata)
        logger.debug("Stack update done", extra={"stack": stack.name})
        return StackOutcome.CHANGED

    def _log_result(self, result: CycleResult) -> None:
        failed = result.count(StackOutcome.FAILED)
        log_level = logging.WARNING if failed else logging.INFO
        logger.log(
            log_level,
            "Reconciliation cycle complete",
            extra={
                "changed": result.count(StackOutcome.CHANGED),
                "unchanged": result.count(StackOutcome.UNCHANGED),
                "failed": failed,
                "worker_count": result.worker_count,
                "duration_seconds": result.duration_seconds,
            },
        )
