"""Tests for the controller entry point and logging setup."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from stackcd import main as main_module
from stackcd.main import JsonFormatter, main, setup_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def quiet_main(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Keep main() from touching global logging and signal handlers."""
    monkeypatch.setattr(main_module, "setup_logging", lambda *args, **kwargs: None)
    signal_mock = MagicMock()
    monkeypatch.setattr(main_module.signal, "signal", signal_mock)
    return signal_mock


@pytest.fixture
def controller_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, configs_dir: Path) -> Path:
    monkeypatch.setenv("CONFIGS_PATH", str(configs_dir))
    monkeypatch.setenv("SWARMCD_DB", str(tmp_path / "data" / "revisions.db"))
    monkeypatch.delenv("SWARMCD_CONCURRENCY", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    return tmp_path


class TestJsonFormatter:
    """Tests for JSON log formatting."""

    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord(
            name="stackcd.scheduler",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Stack %s failed",
            args=("web",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_fields(self) -> None:
        """Test the standard fields and extras are emitted."""
        data = json.loads(JsonFormatter().format(self._record(stack="web", error="boom")))

        assert data["level"] == "WARNING"
        assert data["message"] == "Stack web failed"
        assert data["logger"] == "stackcd.scheduler"
        assert data["stack"] == "web"
        assert data["error"] == "boom"
        assert data["timestamp"].endswith("Z")
        assert "pathname" not in data

    def test_unserializable_extra(self) -> None:
        """Test extras that are not JSON types are stringified."""
        data = json.loads(JsonFormatter().format(self._record(path=Path("/data"))))

        assert data["path"] == "/data"

    def test_exception(self) -> None:
        """Test exception tracebacks are included."""
        try:
            raise ValueError("bad")
        except ValueError:
            import sys

            record = self._record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json(self, restore_root_logger: None) -> None:
        """Test a single JSON handler is installed."""
        setup_logging(logging.DEBUG, "json")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG

    def test_text(self, restore_root_logger: None) -> None:
        """Test the plain text format."""
        setup_logging(logging.INFO, "text")

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)


class TestMain:
    """Tests for main()."""

    def test_invalid_settings(
        self, quiet_main: MagicMock, controller_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test invalid settings exit with status 1."""
        monkeypatch.setenv("LOG_FORMAT", "xml")

        assert main() == 1

    def test_unusable_ledger_location(
        self, quiet_main: MagicMock, controller_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an unusable ledger location is fatal."""
        blocker = controller_env / "blocker"
        blocker.write_text("file, not a directory")
        monkeypatch.setenv("SWARMCD_DB", str(blocker / "revisions.db"))

        assert main() == 1

    def test_invalid_startup_config(
        self, quiet_main: MagicMock, controller_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an invalid configuration at startup is fatal."""
        empty = controller_env / "empty"
        empty.mkdir()
        monkeypatch.setenv("CONFIGS_PATH", str(empty))

        assert main() == 1

    def test_clean_shutdown(
        self, quiet_main: MagicMock, controller_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the scheduler runs and signals request shutdown."""
        scheduler = MagicMock()
        monkeypatch.setattr(main_module, "Scheduler", MagicMock(return_value=scheduler))

        assert main() == 0
        scheduler.run.assert_called_once()

        handled = {c.args[0] for c in quiet_main.call_args_list}
        assert handled == {signal.SIGTERM, signal.SIGINT}

        handler = quiet_main.call_args_list[0].args[1]
        handler(signal.SIGTERM, None)
        scheduler.shutdown.assert_called_once()
        assert (controller_env / "data" / "revisions.db").exists()

    def test_scheduler_crash(
        self, quiet_main: MagicMock, controller_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an unexpected scheduler failure exits with status 1."""
        scheduler = MagicMock()
        scheduler.run.side_effect = RuntimeError("boom")
        monkeypatch.setattr(main_module, "Scheduler", MagicMock(return_value=scheduler))

        assert main() == 1
