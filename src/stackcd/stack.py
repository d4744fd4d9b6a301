"""Stack reconcilers.

A stack reconciler brings one stack's deployed state in line with its
source. Outcome contract for reconcile():
- returns StackMetadata: the stack changed and was deployed
- returns None: nothing changed, nothing was deployed
- raises: reconciliation failed

SwarmStack is the Docker Swarm implementation:
1. Sync the repository checkout
2. Read the compose file (and values file) and fingerprint the content
3. Compare against the fingerprint recorded in the revision ledger
4. Deploy with `docker stack deploy` and record the new revision if changed
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Protocol

import yaml

from .config import DEPLOY_TIMEOUT_SECONDS, MAX_CONFIG_FILE_SIZE_BYTES
from .ledger import RevisionLedger, StackMetadata, fingerprint, short_fingerprint
from .models import StackConfig
from .repo import GitRepository
from .status import StackStatus

logger = logging.getLogger(__name__)


class StackError(Exception):
    """Raised when a stack's files are missing or invalid."""

    pass


class DeploymentError(Exception):
    """Raised when the deployment backend rejects a stack."""

    pass


class StackReconciler(Protocol):
    """Collaborator interface the scheduler drives, one per stack."""

    @property
    def name(self) -> str: ...

    @property
    def repo_name(self) -> str: ...

    def reconcile(self, status: StackStatus) -> StackMetadata | None: ...


class StackDeployer:
    """Deploys compose files to a Swarm via the docker CLI."""

    def __init__(self, docker_binary: str = "docker", timeout: int = DEPLOY_TIMEOUT_SECONDS) -> None:
        self._docker = docker_binary
        self._timeout = timeout

    def deploy(
        self,
        stack_name: str,
        compose_file: Path,
        cwd: Path,
        values: dict[str, str] | None = None,
    ) -> None:
        """Run `docker stack deploy` for a stack.

        Args:
            stack_name: Swarm stack name.
            compose_file: Compose file to deploy.
            cwd: Working directory, so relative paths in the file resolve.
            values: Variables exposed to compose interpolation.

        Raises:
            DeploymentError: If the command fails or times out.
        """
        cmd = [
            self._docker,
            "stack",
            "deploy",
            "--compose-file",
            str(compose_file),
            "--prune",
            "--with-registry-auth",
            stack_name,
        ]
        env = os.environ.copy()
        if values:
            env.update(values)

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                timeout=self._timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise DeploymentError(
                f"docker stack deploy timed out after {self._timeout}s for stack {stack_name}"
            ) from e
        except FileNotFoundError as e:
            raise DeploymentError(f"docker executable not found: {self._docker}") from e

        if result.returncode != 0:
            raise DeploymentError(
                f"docker stack deploy failed for stack {stack_name}: {result.stderr.strip()}"
            )


class SwarmStack:
    """Reconciles one compose-defined stack against its repository."""

    def __init__(
        self,
        name: str,
        config: StackConfig,
        repo: GitRepository,
        ledger: RevisionLedger,
        deployer: StackDeployer | None = None,
    ) -> None:
        self._name = name
        self._config = config
        self._repo = repo
        self._ledger = ledger
        self._deployer = deployer or StackDeployer()

    @property
    def name(self) -> str:
        return self._name

    @property
    def repo_name(self) -> str:
        return self._repo.name

    @property
    def config(self) -> StackConfig:
        return self._config

    def reconcile(self, status: StackStatus) -> StackMetadata | None:
        """Deploy the stack if its content changed since the last deployment.

        Must be called while holding the repository's lock.
        """
        if status.error:
            logger.info(
                "Retrying stack after previous failure",
                extra={"stack": self._name, "previous_error": status.error},
            )

        repo_revision = self._repo.sync(self._config.branch)
        compose_path = self._repo.path / self._config.compose_file
        content = self._read_file(compose_path)

        values: dict[str, str] | None = None
        if self._config.values_file:
            values_path = self._repo.path / self._config.values_file
            values_content = self._read_file(values_path)
            values = self._parse_values(values_path, values_content)
            content += b"\n" + values_content

        new_hash = fingerprint(content)
        self._ledger.ensure_alive()
        last = self._ledger.load(self._name)

        if last.hash == new_hash:
            logger.debug(
                "Stack unchanged",
                extra={
                    "stack": self._name,
                    "repo_revision": repo_revision,
                    "hash": last.short_hash,
                },
            )
            return None

        tracked = [self._config.compose_file]
        if self._config.values_file:
            tracked.append(self._config.values_file)
        stack_revision = self._repo.last_commit_for(*tracked)

        logger.info(
            "Deploying stack",
            extra={
                "stack": self._name,
                "repo_revision": repo_revision,
                "stack_revision": stack_revision,
                "previous_hash": last.short_hash,
                "hash": short_fingerprint(new_hash),
            },
        )
        self._deployer.deploy(self._name, compose_path, cwd=self._repo.path, values=values)

        metadata = StackMetadata.from_content(repo_revision, stack_revision, content)
        self._ledger.upsert(self._name, metadata)
        logger.info(
            "Stack deployed",
            extra={"stack": self._name, "hash": metadata.short_hash},
        )
        return metadata

    def _read_file(self, path: Path) -> bytes:
        if not path.is_file():
            raise StackError(f"Stack file not found for stack {self._name}: {path}")
        try:
            if path.stat().st_size > MAX_CONFIG_FILE_SIZE_BYTES:
                raise StackError(
                    f"Stack file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
                )
            return path.read_bytes()
        except OSError as e:
            raise StackError(f"Failed to read stack file {path}: {e}") from e

    def _parse_values(self, path: Path, content: bytes) -> dict[str, str]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise StackError(f"Invalid YAML in values file {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StackError(f"Values file must contain a YAML mapping: {path}")

        values: dict[str, str] = {}
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                raise StackError(f"Values file {path}: '{key}' must be a scalar")
            values[str(key)] = "" if value is None else str(value)
        return values
