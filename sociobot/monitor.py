"""Discord monitor wiring routing, ACL, breaker, agent and delivery together."""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any

import discord

from .acl import AclAssessment, AclSettings, assess_message
from .agent import AgentInvoker, InvocationStatus
from .breaker import (
    DEFAULT_LOAD_CHECK_INTERVAL,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_FAILURES,
    DEFAULT_MAX_LOAD_AVERAGE,
    CircuitBreaker,
    InvocationGate,
    LoadMonitor,
)
from .classifier import (
    describe_shared_channel_relevance,
    is_error_shaped_response,
    is_own_message,
    is_relevant_in_shared_channel,
)
from .context import (
    ChannelInfo,
    batch_entry,
    build_reaction_notification,
    build_realtime_query,
    is_audio_attachment,
    resolve_mentions,
)
from .cursors import CursorStore
from .delivery import DeliveryError, deliver_reply
from .interactions import InteractionLog
from .interpreter import OutcomeKind, interpret_response
from .media import MediaProcessor
from .routing import (
    ChannelKind,
    Scope,
    can_view,
    channel_slowdown,
    decide_realtime,
    describe_channel,
    infer_bootstrap_cutoff,
    is_direct_message,
    is_low_priority,
    select_backlog,
)
from .scheduler import DEFAULT_MESSAGE_DELAY_MS, LowPriorityScheduler, low_priority_delay

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LIMIT = 20
PREVIEW_LENGTH = 100


@dataclass
class MonitorOptions:
    """Command-line switches that change what the monitor does."""

    agent_name: str
    no_monitoring: bool = False
    no_agent: bool = False
    no_discord: bool = False
    scope: Scope = field(default_factory=Scope)
    show_backlog: bool = False
    clear_backlog: bool = False
    debug: bool = False


class DiscordClient(discord.Client):
    """Discord client that forwards events to the monitor."""

    def __init__(self, monitor: "DiscordMonitor", *, intents: discord.Intents):
        super().__init__(intents=intents)
        self.monitor = monitor

    async def on_ready(self) -> None:
        await self.monitor.on_ready()

    async def on_message(self, message: discord.Message) -> None:
        await self.monitor.process_message_event(message)

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        await self.monitor.process_reaction_event(payload)


class DiscordMonitor:
    """Handles Discord events for one agent identity.

    Startup runs the backlog scan once; messages arriving meanwhile are
    queued and replayed afterwards. Live messages then go straight to the
    agent, or through a delay when they are low priority.
    """

    def __init__(
        self,
        config: dict[str, Any],
        options: MonitorOptions,
        cursors: CursorStore | None = None,
        interactions: InteractionLog | None = None,
    ):
        self.config = config
        self.options = options
        self.agent_name = options.agent_name

        discord_config = config["discord"]
        self.token = discord_config["token"]
        self.self_id = int(discord_config["bot_user_id"])
        shared = discord_config.get("bot_dms_channel_id")
        self.shared_channel_id = int(shared) if shared else None
        self.dm_channel_ids = [int(c) for c in discord_config.get("dm_channel_ids", [])]

        self.acl_settings = AclSettings.from_config(config)
        self.message_delay = int(config.get("message_delay", DEFAULT_MESSAGE_DELAY_MS))
        self.fetch_limit = int(config.get("message_fetch_limit", DEFAULT_FETCH_LIMIT))

        breaker_config = config.get("breaker", {})
        self.breaker = CircuitBreaker(
            int(breaker_config.get("max_failures", DEFAULT_MAX_FAILURES)),
            on_trip=self._on_breaker_trip,
        )
        self.gate = InvocationGate(
            int(breaker_config.get("max_concurrent", DEFAULT_MAX_CONCURRENT))
        )
        self.load_monitor = LoadMonitor(
            self.breaker,
            max_load=float(breaker_config.get("max_load_average", DEFAULT_MAX_LOAD_AVERAGE)),
            interval=float(
                breaker_config.get("load_check_interval", DEFAULT_LOAD_CHECK_INTERVAL)
            ),
        )

        self.invoker = AgentInvoker(
            self.agent_name, config.get("agent", {}), self.breaker, self.gate, options.debug
        )
        self.media = MediaProcessor(config.get("media", {}), self.agent_name)
        self.cursors = cursors or CursorStore(
            config.get("persistence", {}).get("dir", "data/persistence")
        )
        self.interactions = interactions
        self.scheduler = LowPriorityScheduler()

        self.startup_complete = False
        self.message_queue: list[discord.Message] = []
        self.exit_code = 0
        self._ready_started = False
        self._closing = False
        self._close_task: asyncio.Task | None = None

        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        intents.dm_messages = True
        intents.reactions = True
        self.client = DiscordClient(self, intents=intents)

    # Lifecycle

    async def run(self) -> None:
        """Connect and process events until the client is closed."""
        self.load_monitor.start()
        try:
            await self.client.start(self.token)
        finally:
            await self.close()

    async def close(self) -> None:
        await self.load_monitor.stop()
        await self.scheduler.cancel_all()
        await self.client.close()

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Close the client from synchronous code, remembering the exit code."""
        if exit_code:
            self.exit_code = exit_code
        if self._closing:
            return
        self._closing = True
        self._close_task = asyncio.create_task(self.close())

    def _on_breaker_trip(self, reason: str) -> None:
        logger.error(f"Shutting down: {reason}")
        self.request_shutdown(1)

    async def on_ready(self) -> None:
        if self._ready_started:
            logger.info("Discord session resumed")
            return
        self._ready_started = True

        user = self.client.user
        logger.info(f"{self.agent_name} Discord Bot is ready! Logged in as {user}")
        if user is not None and user.id != self.self_id:
            logger.warning(
                f"Configured bot_user_id {self.self_id} differs from {user.id}, using the latter"
            )
            self.self_id = user.id

        cursors = self.cursors.load(self.agent_name)
        logger.info(f"Loaded last processed messages: {len(cursors)} channels")

        if self.options.show_backlog:
            await self.show_backlog()
            await self.close()
            return

        if self.options.clear_backlog:
            await self.clear_backlog()
            logger.info("Clear backlog complete, exiting")
            await self.close()
            return

        await self.process_backlog()
        if self.breaker.tripped:
            return

        if self.options.no_monitoring:
            logger.info("No-monitoring mode: finished checking all channels, exiting")
            await self.close()
            return

        self.startup_complete = True
        logger.info("Bot initialization complete, monitoring for new messages...")
        await self.drain_startup_queue()

    async def drain_startup_queue(self) -> None:
        while self.message_queue:
            message = self.message_queue.pop(0)
            if message.author.bot:
                self.schedule_low_priority(message)
            else:
                await self.handle_realtime(message)

    # Realtime mode

    async def process_message_event(self, message: discord.Message) -> None:
        """Entry point for every message-create event."""
        if is_own_message(message, self.self_id):
            logger.debug(f"Ignoring my own message {message.id}")
            return

        if not self.startup_complete:
            self.message_queue.append(message)
            return

        if message.author.bot:
            logger.info(
                f"Bot message detected: {message.id} from {message.author.name}: "
                f"{message.content[:300]}"
            )

        if is_low_priority(message):
            self.schedule_low_priority(message)
        else:
            await self.handle_realtime(message)

    def schedule_low_priority(self, message: discord.Message) -> None:
        delay = low_priority_delay(channel_slowdown(message.channel), self.message_delay)
        self.scheduler.schedule(message, delay, self.handle_realtime)

    async def handle_realtime(self, message: discord.Message) -> None:
        """Route one live message and act on the agent's answer."""
        if not self.breaker.check("dropping realtime message"):
            return

        decision = decide_realtime(message, self.self_id, self.shared_channel_id)
        logger.debug(
            f"ROUTING: message {message.id} from {message.author.name} in "
            f"{describe_channel(message.channel)}: mention={decision.is_mention}, "
            f"dm={decision.is_dm}, view={decision.has_view_permission} -> {decision.reason}"
        )
        if not decision.process:
            return

        content = (await resolve_mentions(message.content, self.client)).strip()
        if not content and not message.attachments:
            return

        if self.options.no_agent:
            logger.info("Real-time message skipped, agent processing disabled (--no-agent)")
            return

        await self._record(
            "message_received",
            message.channel.id,
            message.id,
            author=message.author.name,
            reason=decision.reason,
        )

        channel_info = ChannelInfo.from_channel(message.channel)
        assessment = await assess_message(message, self.self_id, self.acl_settings)
        audio = []
        if self.media.can_transcribe:
            audio = [a for a in message.attachments if is_audio_attachment(a)]
        transcriptions = await self.media.transcribe(audio)
        query = build_realtime_query(message, content, channel_info, assessment, transcriptions)

        result = await self.invoker.invoke(query, channel_info, message.author.name)
        result = dataclasses.replace(
            result,
            had_transcription=bool(transcriptions),
            acl_limited=assessment.reactions_only,
        )
        if result.status != InvocationStatus.OK:
            logger.info(f"No agent response for message {message.id} ({result.status.value})")
            return

        if self.options.no_discord:
            logger.info("Real-time response generated, Discord response skipped")
            return

        await self.act_on_response(
            message,
            result.text,
            assessment,
            context="realtime processing",
            had_transcription=result.had_transcription,
        )

    async def act_on_response(
        self,
        message: discord.Message,
        text: str | None,
        assessment: AclAssessment,
        *,
        context: str,
        had_transcription: bool = False,
    ) -> bool:
        """Carry out the agent's answer to one message.

        Returns:
            True if the message is now recorded as processed
        """
        outcome = interpret_response(text, assessment)
        channel_id = message.channel.id
        await self._record(
            "agent_response", channel_id, message.id, outcome=outcome.kind.value
        )

        if outcome.kind == OutcomeKind.EMPTY:
            logger.info(f"Agent produced no output for message {message.id}")
            return False

        if outcome.kind == OutcomeKind.ERROR:
            logger.warning(f"Agent returned an error response for message {message.id}")
            self.breaker.record_failure(f"{context} message {message.id}")
            return False

        self.breaker.record_success()

        if outcome.kind == OutcomeKind.NO_RESPONSE:
            logger.info(f"Agent returned NO_RESPONSE, no Discord reply for message {message.id}")
        elif outcome.kind == OutcomeKind.REACTION:
            logger.info(f"Reacting to message {message.id} with {outcome.emoji}")
            try:
                await message.add_reaction(outcome.emoji)
            except discord.HTTPException as e:
                logger.warning(f"Reaction FAILED for message {message.id} ({outcome.emoji}): {e}")
            else:
                await self._record("reaction", channel_id, message.id, emoji=outcome.emoji)
        elif outcome.kind == OutcomeKind.BLOCKED:
            logger.info(f"Blocking text response to message {message.id} (reactions only)")
        else:
            audio_path = None
            if had_transcription and self.media.can_speak:
                audio_path = await self.media.synthesize(outcome.text, message.id)
                if audio_path is None:
                    logger.info("Speech encoding failed, sending text-only response")
            try:
                sent = await deliver_reply(message, outcome.text, assessment.next_acl, audio_path)
            except DeliveryError as e:
                logger.error(f"Discord delivery FAILED for message {message.id}: {e}")
                return False
            finally:
                if audio_path is not None:
                    audio_path.unlink(missing_ok=True)
            logger.info(
                f"Discord delivery SUCCESS for message {message.id}"
                f"{' with audio' if audio_path else ''} ({len(sent)} chunks)"
            )
            await self._record(
                "delivery", channel_id, message.id, chunks=len(sent), acl=assessment.next_acl
            )

        self.cursors.set(self.agent_name, channel_id, message.id)
        return True

    async def process_reaction_event(self, payload: discord.RawReactionActionEvent) -> None:
        """Tell the agent about a reaction; its answer is never delivered."""
        if payload.user_id == self.self_id:
            logger.debug("Skipping self-reaction notification")
            return
        if self.options.no_agent:
            return

        try:
            channel = await self._get_channel(payload.channel_id)
            message = await channel.fetch_message(payload.message_id)
            reactor = payload.member or self.client.get_user(payload.user_id)
            if reactor is None:
                reactor = await self.client.fetch_user(payload.user_id)
        except discord.HTTPException as e:
            logger.warning(f"Error handling reaction on message {payload.message_id}: {e}")
            return

        channel_name = describe_channel(channel)
        notification = build_reaction_notification(reactor, payload.emoji, message, channel_name)
        logger.info(
            f"Reaction notification: {reactor.name} reacted with {payload.emoji} to "
            f"{message.author.name}'s message in {channel_name}"
        )
        await self._record(
            "reaction", channel.id, message.id, reactor=reactor.name, emoji=str(payload.emoji)
        )
        result = await self.invoker.invoke(
            notification, ChannelInfo.from_channel(channel), "Discord System"
        )
        if result.ok:
            if result.text and is_error_shaped_response(result.text):
                logger.warning(f"Agent returned an error response for reaction on {message.id}")
                self.breaker.record_failure(f"reaction notification {message.id}")
            else:
                self.breaker.record_success()

    # Backlog mode

    async def backlog_channels(self) -> list[tuple[ChannelKind, Any]]:
        """Channels visited by backlog mode under the current scope."""
        channels: list[tuple[ChannelKind, Any]] = []
        scope = self.options.scope

        if scope.dms:
            channels.extend((ChannelKind.DIRECT_MESSAGE, c) for c in await self.dm_channels())

        if scope.botdms and self.shared_channel_id is not None:
            try:
                shared = await self._get_channel(self.shared_channel_id)
            except discord.HTTPException as e:
                logger.warning(f"Could not fetch bot-dms channel {self.shared_channel_id}: {e}")
            else:
                channels.append((ChannelKind.SHARED_BOT_CHANNEL, shared))

        if scope.text:
            for guild in self.client.guilds:
                text_channels = [
                    c
                    for c in guild.text_channels
                    if c.id != self.shared_channel_id and can_view(c)
                ]
                logger.info(f"Guild {guild.name}: checking {len(text_channels)} text channels")
                channels.extend((ChannelKind.GUILD_TEXT, c) for c in text_channels)

        return channels

    async def dm_channels(self) -> list[Any]:
        """Cached DM channels plus the configured DM channel ids."""
        found = {c.id: c for c in self.client.private_channels if is_direct_message(c)}
        for channel_id in self.dm_channel_ids:
            if channel_id in found:
                continue
            try:
                channel = await self._get_channel(channel_id)
            except discord.HTTPException as e:
                logger.warning(f"Could not fetch DM channel {channel_id}: {e}")
                continue
            if not is_direct_message(channel):
                logger.warning(f"Configured DM channel {channel_id} is not a DM, skipping")
                continue
            found[channel_id] = channel
        logger.debug(f"Found {len(found)} DM channels")
        return list(found.values())

    async def fetch_history(self, channel: Any, cursor: int | None, limit: int) -> list[Any]:
        kwargs: dict[str, Any] = {"limit": limit}
        if cursor is not None:
            kwargs["after"] = discord.Object(id=cursor)
        return [message async for message in channel.history(**kwargs)]

    async def pending_messages(
        self, kind: ChannelKind, channel: Any, *, bootstrap: bool = True
    ) -> tuple[list[Any], int | None]:
        """Fetch the unprocessed messages of a channel, oldest first.

        Returns:
            The batch, and the highest fetched message id newer than the
            cursor (None if nothing new was fetched)
        """
        cursor = self.cursors.get(self.agent_name, channel.id)
        messages = await self.fetch_history(channel, cursor, self.fetch_limit)
        newest = max((int(m.id) for m in messages), default=None)
        if cursor is None and bootstrap:
            cursor = infer_bootstrap_cutoff(messages, self.self_id)
            if cursor is not None:
                logger.debug(f"Inferred cutoff {cursor} for {describe_channel(channel)}")

        batch = select_backlog(messages, cursor, self.self_id)
        if kind == ChannelKind.SHARED_BOT_CHANNEL:
            relevant = []
            for message in batch:
                reason = describe_shared_channel_relevance(message, self.self_id)
                if is_relevant_in_shared_channel(message, self.self_id):
                    relevant.append(message)
                elif await self._replies_to_self(message):
                    reason = "reply to own message"
                    relevant.append(message)
                logger.debug(f"bot-dms message {message.id} from {message.author.name}: {reason}")
            batch = relevant

        return batch, newest

    async def process_backlog(self) -> None:
        """Process the backlog of every in-scope channel, one batch each."""
        logger.info(f"Checking channels for missed messages (scope: {self.options.scope})")
        for kind, channel in await self.backlog_channels():
            if self.breaker.tripped:
                return
            try:
                count = await self.process_backlog_channel(kind, channel)
            except discord.HTTPException as e:
                logger.warning(f"Error checking channel {describe_channel(channel)}: {e}")
                continue
            if count:
                logger.info(f"Found {count} new messages in {describe_channel(channel)}")

    async def process_backlog_channel(self, kind: ChannelKind, channel: Any) -> int:
        """Hand one channel's backlog to the agent as a single batch.

        Returns:
            Number of backlog messages found
        """
        batch, newest = await self.pending_messages(kind, channel)
        if not batch:
            if newest is not None and not self.options.no_agent:
                # Only irrelevant or own messages: skip past them
                self.cursors.set(self.agent_name, channel.id, newest)
            return 0
        name = describe_channel(channel)

        if self.options.no_agent:
            logger.info(f"Skipping {len(batch)} messages in {name}, agent processing disabled")
            return len(batch)

        assessments: dict[int, AclAssessment] = {}
        entries = []
        for message in batch:
            content = (await resolve_mentions(message.content, self.client)).strip()
            assessment = await assess_message(message, self.self_id, self.acl_settings)
            assessments[message.id] = assessment
            entries.append(batch_entry(message, content, assessment))

        result = await self.invoker.invoke_batch(ChannelInfo.from_channel(channel), entries)
        if not result.ok:
            logger.warning(f"Batch for {name} not processed ({result.status.value})")
            return len(batch)

        if self.options.no_discord:
            logger.info(f"Batch responses for {name} generated, Discord responses skipped")
            return len(batch)

        if not result.responses:
            self.breaker.record_success()

        by_id = {message.id: message for message in batch}
        for response in result.responses:
            message = by_id.get(response.message_id)
            if message is None:
                logger.warning(f"Agent answered unknown message {response.message_id} in {name}")
                continue
            await self.act_on_response(
                message,
                response.response,
                assessments[message.id],
                context=f"backlog processing {name}",
            )
            if self.breaker.tripped:
                return len(batch)

        # Messages the agent chose not to answer count as processed too
        self.cursors.set(self.agent_name, channel.id, newest)
        return len(batch)

    async def show_backlog(self) -> int:
        """Print the pending backlog without processing it."""
        logger.info("Showing backlog messages (no processing)")
        total = 0
        for kind, channel in await self.backlog_channels():
            try:
                messages, _ = await self.pending_messages(kind, channel, bootstrap=False)
            except discord.HTTPException as e:
                logger.warning(f"Error showing backlog for {describe_channel(channel)}: {e}")
                continue
            if not messages:
                continue

            if kind == ChannelKind.DIRECT_MESSAGE:
                title = describe_channel(channel)
            elif kind == ChannelKind.SHARED_BOT_CHANNEL:
                title = "Bot-DMs channel"
            else:
                title = f"{channel.guild.name}/#{channel.name}"
            print(f"\n{title}: {len(messages)} messages")
            for message in messages:
                timestamp = message.created_at.strftime("%m/%d/%Y, %H:%M:%S")
                print(f"  {timestamp} {message.author.name}: {message.content[:PREVIEW_LENGTH]}")
            total += len(messages)

        print(f"\nTotal backlog: {total} messages")
        return total

    async def clear_backlog(self) -> None:
        """Mark the latest message of every in-scope channel as processed."""
        logger.info("Clearing backlog - marking all current messages as processed")
        for _kind, channel in await self.backlog_channels():
            try:
                latest = await self.fetch_history(channel, None, 1)
            except discord.HTTPException as e:
                logger.warning(f"Error clearing backlog for {describe_channel(channel)}: {e}")
                continue
            if latest:
                self.cursors.set(self.agent_name, channel.id, latest[0].id)
                logger.info(f"Cleared backlog for {describe_channel(channel)}: {latest[0].id}")
        logger.info("Backlog cleared successfully")

    # Helpers

    async def _get_channel(self, channel_id: int) -> Any:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        return channel

    async def _replies_to_self(self, message: Any) -> bool:
        reference = message.reference
        if reference is None or reference.message_id is None:
            return False
        parent = reference.resolved if isinstance(reference.resolved, discord.Message) else None
        if parent is None:
            try:
                parent = await message.channel.fetch_message(reference.message_id)
            except discord.HTTPException:
                return False
        return parent.author.id == self.self_id

    async def _record(self, kind: str, channel_id: int, message_id: int, **details: Any) -> None:
        if self.interactions is not None:
            await self.interactions.record(self.agent_name, kind, channel_id, message_id, **details)
