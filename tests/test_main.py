"""Tests for the CLI entry point."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nanami_alarm.__main__ import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SUCCESS,
    configure_logging,
    create_parser,
    main,
    print_config_summary,
    run_config_check,
    run_pipeline,
    validate_config,
)
from nanami_alarm.errors import ConfigurationError
from nanami_alarm.shutdown import GracefulShutdown


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove settings that would change defaults."""
    for name in (
        "DATABASE_URL",
        "REDIS_URL",
        "DISCORD_TOKEN",
        "OPENAI_API_KEY",
        "LOG_LEVEL",
        "HEALTH_PORT",
        "PORT",
        "DRY_RUN",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def mock_pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.start = AsyncMock()
    pipeline.stop = AsyncMock()
    return pipeline


class TestCreateParser:
    """Tests for argument parser creation."""

    def test_parser_has_version(self) -> None:
        parser = create_parser()
        with pytest.raises(SystemExit) as exc_info:
            parser.parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_parser_flags(self) -> None:
        parser = create_parser()
        args = parser.parse_args(
            ["--config-check", "--dry-run", "--no-bot", "--log-level", "DEBUG", "--health-port", "8080"]
        )
        assert args.config_check is True
        assert args.dry_run is True
        assert args.no_bot is True
        assert args.log_level == "DEBUG"
        assert args.health_port == 8080

    def test_parser_default_values(self) -> None:
        args = create_parser().parse_args([])
        assert args.config_check is False
        assert args.log_level is None
        assert args.dry_run is False
        assert args.no_bot is False
        assert args.health_port is None


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_root_level(self) -> None:
        configure_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG

        configure_logging("INFO")
        assert logging.getLogger().level == logging.INFO

    def test_noisy_loggers_quieted(self) -> None:
        configure_logging("DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING


class TestValidateConfig:
    """Tests for configuration validation."""

    def test_validate_config_success(self, clean_env: pytest.MonkeyPatch) -> None:
        assert validate_config() is not None

    def test_validate_config_failure(
        self, clean_env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        clean_env.setenv("DATABASE_URL", "mysql://localhost/test")

        assert validate_config() is None
        assert "Configuration validation failed" in capsys.readouterr().err


class TestConfigSummary:
    """Tests for the printed configuration summary."""

    def test_config_check_prints_summary(
        self, clean_env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        clean_env.setenv("DISCORD_TOKEN", "bot-token")
        settings = validate_config()
        assert settings is not None

        assert run_config_check(settings) == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert "Configuration is valid!" in out
        assert "Discord: configured" in out
        assert "OpenAI: not configured" in out
        assert "bot-token" not in out

    def test_summary_flags(
        self, clean_env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = validate_config()
        assert settings is not None

        print_config_summary(settings, dry_run=True, enable_bot=False)

        out = capsys.readouterr().out
        assert "Dry Run: True" in out
        assert "Slash commands: disabled" in out


class TestRunPipeline:
    """Tests for the async runner."""

    async def test_clean_shutdown(self, clean_env: pytest.MonkeyPatch, mock_pipeline: MagicMock) -> None:
        settings = validate_config()
        assert settings is not None

        with (
            patch("nanami_alarm.__main__.Pipeline", return_value=mock_pipeline) as pipeline_cls,
            patch.object(GracefulShutdown, "wait", new=AsyncMock()),
        ):
            code = await run_pipeline(settings, dry_run=True, enable_bot=False)

        assert code == EXIT_SUCCESS
        pipeline_cls.assert_called_once_with(settings, dry_run=True, enable_bot=False)
        mock_pipeline.start.assert_awaited_once()
        mock_pipeline.stop.assert_awaited_once()

    @pytest.mark.parametrize(
        ("error", "expected"),
        [(ConfigurationError("bad"), EXIT_CONFIG_ERROR), (RuntimeError("boom"), EXIT_ERROR)],
    )
    async def test_start_failure(
        self,
        clean_env: pytest.MonkeyPatch,
        mock_pipeline: MagicMock,
        error: Exception,
        expected: int,
    ) -> None:
        settings = validate_config()
        assert settings is not None
        mock_pipeline.start.side_effect = error

        with patch("nanami_alarm.__main__.Pipeline", return_value=mock_pipeline):
            code = await run_pipeline(settings, dry_run=False)

        assert code == expected


class TestMain:
    """Tests for main entry point."""

    def test_main_with_config_check(self, clean_env: pytest.MonkeyPatch) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--config-check"])

        assert exc_info.value.code == EXIT_SUCCESS

    def test_main_with_invalid_config(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("REDIS_URL", "http://localhost:6379")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == EXIT_CONFIG_ERROR

    @patch("nanami_alarm.__main__.run_pipeline")
    @patch("nanami_alarm.__main__.asyncio.run")
    def test_main_runs_pipeline(
        self,
        mock_asyncio_run: MagicMock,
        mock_run_pipeline: MagicMock,
        clean_env: pytest.MonkeyPatch,
    ) -> None:
        mock_asyncio_run.return_value = EXIT_SUCCESS

        with pytest.raises(SystemExit) as exc_info:
            main(["--dry-run", "--no-bot", "--health-port", "8081"])

        assert exc_info.value.code == EXIT_SUCCESS
        settings, dry_run = mock_run_pipeline.call_args.args
        assert dry_run is True
        assert settings.health_port == 8081
        assert mock_run_pipeline.call_args.kwargs == {"enable_bot": False}
        mock_asyncio_run.assert_called_once()


class TestIntegration:
    """Integration tests for CLI invocation."""

    def test_cli_help_option(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["-h"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "nanami-alarm" in out
        assert "--config-check" in out
        assert "--no-bot" in out

    def test_cli_invalid_log_level(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--log-level", "INVALID"])

        assert exc_info.value.code != 0
        assert "invalid choice" in capsys.readouterr().err
