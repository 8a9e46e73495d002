"""Main application entry point for sociobot."""

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from typing import Any

from . import __version__
from .debug_server import DebugServer
from .interactions import InteractionLog
from .monitor import DiscordMonitor, MonitorOptions
from .routing import SCOPES, Scope

# Set up logging
root_logger = logging.getLogger()
root_logger.setLevel(logging.DEBUG)

formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Console handler for INFO and above
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(formatter)

# File handler for DEBUG and above
file_handler = logging.FileHandler("debug.log")
file_handler.setLevel(logging.DEBUG)
file_handler.setFormatter(formatter)

root_logger.addHandler(console_handler)
root_logger.addHandler(file_handler)

# Suppress noisy third-party library messages
logging.getLogger("aiosqlite").setLevel(logging.INFO)
logging.getLogger("discord").setLevel(logging.INFO)
logging.getLogger("discord.gateway").setLevel(logging.WARNING)
logging.getLogger("discord.http").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SOCIOBOT_CONFIG"
REQUIRED_FIELDS = (("discord", "token"), ("discord", "bot_user_id"))


def load_config(config_path: str) -> dict[str, Any]:
    """Load configuration from JSON file."""
    try:
        with open(config_path) as f:
            config = json.load(f)
            logger.debug(f"Loaded configuration from {config_path}")
            return config
    except FileNotFoundError:
        logger.error(
            f"Config file {config_path} not found. "
            "Copy config.json.example to config.json and configure."
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in config file: {e}")
        sys.exit(1)


def validate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Return the ``sociobot`` section, exiting if required fields are missing."""
    settings = config.get("sociobot")
    if not isinstance(settings, dict):
        logger.error("Missing 'sociobot' section in config file")
        sys.exit(1)

    missing = []
    for section, key in REQUIRED_FIELDS:
        if not settings.get(section, {}).get(key):
            missing.append(f"sociobot.{section}.{key}")
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        sys.exit(1)
    return settings


def resolve_config_path(cli_path: str | None) -> str:
    return cli_path or os.environ.get(CONFIG_ENV_VAR) or "config.json"


class SocioBot:
    """Main application: one Discord identity driving one agent."""

    def __init__(self, config_path: str, options: MonitorOptions):
        self.config = load_config(config_path)
        self.settings = validate_config(self.config)
        self.interactions = InteractionLog(
            self.settings.get("interactions", {})
            .get("database", {})
            .get("path", "interactions.db")
        )
        self.monitor = DiscordMonitor(self.settings, options, interactions=self.interactions)
        port = self.settings.get("http", {}).get("port")
        self.debug_server = DebugServer(self.monitor, int(port)) if port else None

    async def run(self) -> int:
        """Run until shutdown. Returns the process exit code."""
        await self.interactions.initialize()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.monitor.request_shutdown, 0)

        if self.debug_server:
            await self.debug_server.start()
        try:
            await self.monitor.run()
        finally:
            if self.debug_server:
                await self.debug_server.stop()
        return self.monitor.exit_code


def parse_scope(value: str) -> Scope:
    try:
        return Scope.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="sociobot - Discord front end for command-line AI agents"
    )
    parser.add_argument("agent", help="Agent name (selects persistence file and agent command)")
    parser.add_argument(
        "--no-monitoring",
        "-1",
        action="store_true",
        help="Process the backlog once, then exit",
    )
    parser.add_argument(
        "--no-agent", action="store_true", help="Do not invoke the agent for any message"
    )
    parser.add_argument(
        "--no-discord",
        action="store_true",
        help="Invoke the agent but do not send anything to Discord",
    )
    parser.add_argument(
        "--scope",
        type=parse_scope,
        default=Scope(),
        help=f"Channels visited by backlog processing, comma-separated ({'|'.join(SCOPES)})",
    )
    parser.add_argument(
        "--show-backlog", action="store_true", help="Print unprocessed messages and exit"
    )
    parser.add_argument(
        "--clear-backlog",
        action="store_true",
        help="Mark all current messages as processed and exit",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging on the console")
    parser.add_argument(
        "--config",
        type=str,
        help=f"Path to config file (default: ${CONFIG_ENV_VAR} or config.json)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def options_from_args(args: argparse.Namespace) -> MonitorOptions:
    return MonitorOptions(
        agent_name=args.agent,
        no_monitoring=args.no_monitoring,
        no_agent=args.no_agent,
        no_discord=args.no_discord,
        scope=args.scope,
        show_backlog=args.show_backlog,
        clear_backlog=args.clear_backlog,
        debug=args.debug,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    if args.debug:
        console_handler.setLevel(logging.DEBUG)

    options = options_from_args(args)
    logger.info(f"Starting agent {options.agent_name} (scope: {options.scope})")
    bot = SocioBot(resolve_config_path(args.config), options)
    exit_code = asyncio.run(bot.run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
