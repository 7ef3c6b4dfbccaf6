"""Command line launcher for the Nanami alarm bot.

Run ``python -m nanami_alarm --help`` for the available switches.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.config
import sys
from typing import Any, NoReturn

from pydantic import ValidationError

from nanami_alarm import __version__
from nanami_alarm.config import Settings, clear_settings_cache, get_settings
from nanami_alarm.errors import ConfigurationError
from nanami_alarm.pipeline import Pipeline
from nanami_alarm.shutdown import GracefulShutdown

APP_NAME = "Nanami Alarm"
APP_VERSION = __version__

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
NOISY_LOGGERS = ("httpx", "httpcore", "discord", "openai", "aiosqlite", "sqlalchemy.engine")

_LOG_FORMATS = {
    "plain": "%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    "verbose": "%(asctime)s %(levelname)-8s %(name)s [%(module)s:%(lineno)d] | %(message)s",
}

_USAGE_EXAMPLES = """
typical invocations:
  nanami-alarm                   start the alarm loops and slash commands
  nanami-alarm --config-check    print the resolved settings and quit
  nanami-alarm --dry-run         write alarm payloads to the log only
  nanami-alarm --no-bot          alarm loops without the gateway session
"""


def create_parser() -> argparse.ArgumentParser:
    """Build the ``nanami-alarm`` argument parser."""
    parser = argparse.ArgumentParser(
        prog="nanami-alarm",
        description="Post CVE, Hacker News and threat-intel alarms to Discord.",
        epilog=_USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")

    modes = parser.add_argument_group("run modes")
    modes.add_argument(
        "--config-check",
        action="store_true",
        help="load settings, report what is configured, then exit",
    )
    modes.add_argument(
        "--dry-run",
        action="store_true",
        help="render alarms into the log instead of sending them",
    )
    modes.add_argument(
        "--no-bot",
        action="store_true",
        help="skip the gateway login so no slash commands are served",
    )

    overrides = parser.add_argument_group("overrides")
    overrides.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=None,
        help="log verbosity; LOG_LEVEL is used when omitted",
    )
    overrides.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="port for /health and /metrics; HEALTH_PORT is used when omitted",
    )
    return parser


def _logging_dict(level: str) -> dict[str, Any]:
    style = "verbose" if level == "DEBUG" else "plain"
    formatters = {
        name: {"format": fmt, "datefmt": "%H:%M:%S" if name == "plain" else None}
        for name, fmt in _LOG_FORMATS.items()
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": style,
                "level": level,
            },
        },
        "loggers": {name: {"level": "WARNING"} for name in NOISY_LOGGERS},
        "root": {"handlers": ["stdout"], "level": level},
    }


def configure_logging(level: str) -> None:
    """Install the stdout handler at ``level`` and quiet chatty libraries."""
    logging.config.dictConfig(_logging_dict(level))


def _summary_group(summary: dict[str, str | dict[str, str]], key: str) -> dict[str, str]:
    value = summary.get(key)
    return value if isinstance(value, dict) else {}


def print_config_summary(settings: Settings, dry_run: bool, enable_bot: bool) -> None:
    """Print the effective configuration with secrets masked."""
    summary = settings.redacted_summary()
    discord = _summary_group(summary, "discord")
    openai = _summary_group(summary, "openai")

    rows = [
        ("Database", summary["database_url"]),
        ("Redis", summary["redis_url"]),
        ("Discord token", discord["token"]),
        ("CVE channel", discord["cve_channel_id"]),
        ("News channel", discord["news_channel_id"]),
        ("OpenAI", f"{openai['api_key']} ({openai['model']})"),
        ("CWE catalog", summary["cwe_xml_path"]),
        ("Log Level", summary["log_level"]),
        ("Health Port", summary["health_port"]),
        ("Dry Run", dry_run),
        ("Slash commands", "enabled" if enable_bot else "disabled"),
    ]
    print(f"{APP_NAME} v{APP_VERSION}")
    print("Configuration:")
    for label, value in rows:
        print(f"  {label}: {value}")
    print()


def validate_config() -> Settings | None:
    """Load settings from the environment.

    Validation problems are written to stderr one field per line.

    Returns:
        The settings, or None when the environment does not validate.
    """
    clear_settings_cache()
    try:
        return get_settings()
    except ValidationError as exc:
        print("Configuration validation failed:", file=sys.stderr)
        for problem in exc.errors():
            location = ".".join(str(part) for part in problem["loc"]) or "settings"
            print(f"  {location}: {problem['msg']}", file=sys.stderr)
    return None


def _availability(enabled: bool, missing: str = "not configured") -> str:
    return "configured" if enabled else missing


def run_config_check(settings: Settings) -> int:
    """Report the validated configuration and which integrations are usable."""
    print("Configuration is valid!")
    print()
    print_config_summary(settings, dry_run=settings.dry_run, enable_bot=settings.discord.enabled)

    print("Integrations:")
    print(f"  Discord: {_availability(settings.discord.enabled)}")
    print(f"  OpenAI: {_availability(settings.openai.enabled, 'not configured (fallback text)')}")
    print(f"  Redis history: {_availability(settings.redis.enabled)}")
    print()
    print("Ready to start.")
    return EXIT_SUCCESS


async def run_pipeline(
    settings: Settings,
    dry_run: bool,
    *,
    enable_bot: bool = True,
    shutdown_timeout: float = 30.0,
) -> int:
    """Start the pipeline and block until SIGINT or SIGTERM.

    Args:
        settings: Validated settings.
        dry_run: Log alarm payloads rather than posting them.
        enable_bot: Log in to the gateway and serve slash commands.
        shutdown_timeout: Upper bound in seconds for each cleanup callback.

    Returns:
        Process exit code.
    """
    log = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            pipeline = Pipeline(settings, dry_run=dry_run, enable_bot=enable_bot)
            shutdown.register_cleanup(pipeline.stop)
            await pipeline.start()
            log.info("Alarm pipeline up (dry_run=%s, bot=%s)", dry_run, enable_bot)
            await shutdown.wait()
            log.info("Stop requested, draining pipeline")
    except KeyboardInterrupt:
        log.info("Interrupted")
        return EXIT_INTERRUPTED
    except ConfigurationError as exc:
        log.error("Cannot start: %s", exc)
        return EXIT_CONFIG_ERROR
    except Exception:
        log.exception("Alarm pipeline crashed")
        return EXIT_ERROR
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> NoReturn:
    """Parse ``argv`` and run the requested mode, exiting with its code."""
    args = create_parser().parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)
    if args.health_port is not None:
        settings = settings.model_copy(update={"health_port": args.health_port})

    configure_logging(args.log_level or settings.log_level)

    if args.config_check:
        sys.exit(run_config_check(settings))

    dry_run = bool(args.dry_run or settings.dry_run)
    enable_bot = not args.no_bot
    print_config_summary(settings, dry_run, enable_bot)
    sys.exit(asyncio.run(run_pipeline(settings, dry_run, enable_bot=enable_bot)))


if __name__ == "__main__":
    main()
