"""Local HTTP server exposing recent DMs and breaker state for debugging."""

import logging
from typing import TYPE_CHECKING, Any

import discord
from aiohttp import web

from .routing import is_direct_message

if TYPE_CHECKING:
    from .monitor import DiscordMonitor

logger = logging.getLogger(__name__)

DMS_PER_CHANNEL = 10
MAX_DMS = 20
DM_PREVIEW_LENGTH = 200


class DebugServer:
    """aiohttp server bound to localhost; only GET /dms and GET /status exist."""

    def __init__(self, monitor: "DiscordMonitor", port: int, host: str = "127.0.0.1"):
        self.monitor = monitor
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/dms", self.handle_dms)
        app.router.add_get("/status", self.handle_status)
        return app

    async def recent_dms(self) -> list[dict[str, Any]]:
        """Most recent DM messages across cached DM channels, newest first."""
        messages = []
        for channel in self.monitor.client.private_channels:
            if not is_direct_message(channel):
                continue
            recipient = channel.recipient.name if channel.recipient else "unknown"
            async for message in channel.history(limit=DMS_PER_CHANNEL):
                content = message.content
                if len(content) > DM_PREVIEW_LENGTH:
                    content = content[:DM_PREVIEW_LENGTH] + "..."
                messages.append(
                    {
                        "timestamp": message.created_at.isoformat(),
                        "author": message.author.name,
                        "recipient": recipient,
                        "content": content,
                    }
                )
        messages.sort(key=lambda m: m["timestamp"], reverse=True)
        return messages[:MAX_DMS]

    async def handle_dms(self, request: web.Request) -> web.Response:
        try:
            messages = await self.recent_dms()
        except discord.HTTPException as e:
            logger.warning(f"Could not fetch DMs for debug server: {e}")
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"messages": messages})

    async def handle_status(self, request: web.Request) -> web.Response:
        breaker = self.monitor.breaker
        return web.json_response(
            {
                "agent": self.monitor.agent_name,
                "startup_complete": self.monitor.startup_complete,
                "consecutive_failures": breaker.consecutive_failures,
                "max_failures": breaker.max_failures,
                "active_invocations": self.monitor.gate.active,
                "max_concurrent": self.monitor.gate.max_concurrent,
                "pending_low_priority": self.monitor.scheduler.pending_count(),
            }
        )

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"DM monitoring server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.debug("Debug server stopped")
