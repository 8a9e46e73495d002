"""Tests for message splitting and reply delivery."""

from unittest.mock import AsyncMock

import discord
import pytest

from sociobot.acl import decode_acl
from sociobot.delivery import (
    DISCORD_MESSAGE_LIMIT,
    DeliveryError,
    chunk_reply,
    deliver_reply,
    split_message,
)


class TestSplitMessage:
    """Test chunking of long text."""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "short",
            "x" * 2000,
            "x" * 2001,
            "word " * 1000,
            ("Sentence number one. " * 60 + "\n") * 5,
            ("Paragraph text " * 40 + "\n\n") * 10,
            "a" * 4500 + " tail",
        ],
    )
    def test_reconstruction_and_limit(self, text):
        chunks = split_message(text)
        assert "".join(chunks) == text
        assert all(len(chunk) <= DISCORD_MESSAGE_LIMIT for chunk in chunks)

    def test_single_chunk_unchanged(self):
        assert split_message("hello world") == ["hello world"]

    def test_prefers_paragraph_break(self):
        text = "a" * 1500 + "\n\n" + "b" * 1000
        chunks = split_message(text)
        assert chunks[0] == "a" * 1500 + "\n\n"
        assert chunks[1] == "b" * 1000

    def test_ignores_early_paragraph_break(self):
        text = "a" * 100 + "\n\n" + ("word " * 600)
        chunks = split_message(text)
        assert len(chunks[0]) > 1600
        assert "".join(chunks) == text

    def test_hard_cut_without_boundaries(self):
        chunks = split_message("x" * 4500)
        assert [len(c) for c in chunks] == [2000, 2000, 500]


class TestChunkReply:
    """Test numbered reply chunks."""

    def test_short_reply_has_no_prefix(self):
        assert chunk_reply("hi") == ["hi"]

    def test_every_chunk_prefixed_and_within_limit(self):
        chunks = chunk_reply("word " * 1000)
        total = len(chunks)
        assert total > 1
        for i, chunk in enumerate(chunks, start=1):
            assert chunk.startswith(f"({i}/{total}) ")
            assert len(chunk) <= DISCORD_MESSAGE_LIMIT


class TestDeliverReply:
    """Test sending replies to Discord."""

    @pytest.mark.asyncio
    async def test_first_chunk_carries_footer(self, fake):
        message = fake.message(1, fake.user(5), fake.dm_channel())
        sent = await deliver_reply(message, "word " * 1000, acl=3)

        assert len(sent) == message.reply.await_count
        first_args, first_kwargs = message.reply.call_args_list[0]
        embed = first_kwargs["embed"]
        assert embed.footer.text.startswith("acl:3 ")
        assert first_kwargs["mention_author"] is False
        for _, kwargs in message.reply.call_args_list[1:]:
            assert "embed" not in kwargs

        # A bot message carrying that embed decodes back to the same ACL
        echoed = fake.message(2, fake.user(9, "me", bot=True), message.channel, embeds=[embed])
        assert decode_acl(echoed) == 3

    @pytest.mark.asyncio
    async def test_think_tags_stripped(self, fake):
        message = fake.message(1, fake.user(5), fake.dm_channel())
        await deliver_reply(message, "<think>private</think>Public answer", acl=1)
        args, _ = message.reply.call_args
        assert args[0] == "Public answer"

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_chunks(self, fake):
        message = fake.message(1, fake.user(5), fake.dm_channel())
        message.reply = AsyncMock(side_effect=[object(), fake.http_error(403, discord.Forbidden)])

        with pytest.raises(DeliveryError, match="chunk 2/"):
            await deliver_reply(message, "word " * 1500, acl=1)
        assert message.reply.await_count == 2
