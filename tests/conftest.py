"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from stackcd.ledger import RevisionLedger  # noqa: E402

REPOS_YAML = """\
infra:
  url: https://git.example.com/ops/infra.git
apps:
  url: https://git.example.com/ops/apps.git
  username: deploy
  password: s3cret
"""

STACKS_YAML = """\
traefik:
  repo: infra
  compose_file: traefik/docker-compose.yml
monitoring:
  repo: infra
  branch: stable
  compose_file: monitoring/docker-compose.yml
web:
  repo: apps
  compose_file: web/docker-compose.yml
  values_file: web/values.yml
"""


@pytest.fixture
def ledger(tmp_path: Path):
    """Initialized ledger backed by a temporary SQLite file."""
    ledger = RevisionLedger(str(tmp_path / "revisions.db"))
    ledger.initialize()
    yield ledger
    ledger.close()


@pytest.fixture
def configs_dir(tmp_path: Path) -> Path:
    """Configuration directory with repos.yaml and stacks.yaml."""
    path = tmp_path / "configs"
    path.mkdir()
    (path / "repos.yaml").write_text(REPOS_YAML)
    (path / "stacks.yaml").write_text(STACKS_YAML)
    return path
