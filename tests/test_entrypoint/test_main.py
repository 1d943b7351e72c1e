"""Tests für __main__.py – Entry-Point.

Testet:
  - parse_args(): --version, --config, --transport, --log-level, Defaults
  - cli_overrides(): nur gesetzte Flags landen in der Config
  - main(): Exit-Codes für Config-Fehler, Engine-Fehler und sauberes Ende
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rpcgate import __version__
from rpcgate.__main__ import cli_overrides, main, parse_args
from rpcgate.engine import EngineHandle
from rpcgate.errors import InternalError

# =============================================================================
# parse_args()
# =============================================================================


class TestParseArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.config is None
        assert args.transport is None
        assert args.host is None
        assert args.port is None
        assert args.log_level is None
        assert args.engine is None

    def test_config_arg(self, tmp_path: Path) -> None:
        cfg_path = str(tmp_path / "custom.yaml")
        args = parse_args(["--config", cfg_path])
        assert args.config == Path(cfg_path)

    def test_transport_and_port(self) -> None:
        args = parse_args(["--transport", "both", "--port", "9000"])
        assert args.transport == "both"
        assert args.port == 9000

    def test_invalid_transport_rejected(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["--transport", "carrier-pigeon"])

    def test_invalid_log_level_rejected(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "TRACE"])

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out


# =============================================================================
# cli_overrides()
# =============================================================================


class TestCliOverrides:
    def test_empty(self) -> None:
        assert cli_overrides(parse_args([])) == {}

    def test_all_flags(self) -> None:
        args = parse_args([
            "--transport", "http",
            "--host", "0.0.0.0",
            "--port", "8181",
            "--log-level", "DEBUG",
            "--engine", "pkg.mod:factory",
        ])
        assert cli_overrides(args) == {
            "server": {"transport": "http", "host": "0.0.0.0", "port": 8181},
            "logging": {"level": "DEBUG"},
            "engine": {"factory": "pkg.mod:factory"},
        }


# =============================================================================
# main()
# =============================================================================


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  transport: stdio\n", encoding="utf-8")
    return path


@pytest.fixture
def isolated_main() -> Iterator[MagicMock]:
    """Kein .env-Laden, kein globales Logging, frisches Engine-Handle, kein Event-Loop."""
    with (
        patch("rpcgate.__main__.load_dotenv"),
        patch("rpcgate.__main__.setup_logging"),
        patch("rpcgate.__main__.default_handle", EngineHandle()),
        patch("rpcgate.__main__.serve", MagicMock(return_value=None)),
        patch("rpcgate.__main__.asyncio") as mock_asyncio,
    ):
        yield mock_asyncio


class TestMain:
    def test_missing_config_file(
        self, tmp_path: Path, isolated_main: MagicMock, capsys: pytest.CaptureFixture[str],
    ) -> None:
        code = main(["--config", str(tmp_path / "nope.yaml")])
        assert code == 1
        assert "Config file not found" in capsys.readouterr().err
        isolated_main.run.assert_not_called()

    def test_bad_engine(self, config_file: Path, isolated_main: MagicMock) -> None:
        code = main(["--config", str(config_file), "--engine", "not-a-path"])
        assert code == 1
        isolated_main.run.assert_not_called()

    def test_clean_run(self, config_file: Path, isolated_main: MagicMock) -> None:
        assert main(["--config", str(config_file)]) == 0
        isolated_main.run.assert_called_once()

    def test_keyboard_interrupt_is_clean(self, config_file: Path, isolated_main: MagicMock) -> None:
        isolated_main.run.side_effect = KeyboardInterrupt
        assert main(["--config", str(config_file)]) == 0

    def test_startup_failure(self, config_file: Path, isolated_main: MagicMock) -> None:
        isolated_main.run.side_effect = InternalError("bind failed", error_code="HTTP_START_FAILED")
        assert main(["--config", str(config_file)]) == 1

    def test_unexpected_crash(self, config_file: Path, isolated_main: MagicMock) -> None:
        isolated_main.run.side_effect = RuntimeError("boom")
        assert main(["--config", str(config_file)]) == 1
