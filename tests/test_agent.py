"""Tests for agent subprocess invocation."""

import asyncio
import json
import re
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from sociobot.agent import (
    AgentInvoker,
    AgentResult,
    InvocationStatus,
    extract_response,
    parse_batch_responses,
)
from sociobot.breaker import CircuitBreaker, InvocationGate
from sociobot.context import ChannelInfo

CHANNEL = ChannelInfo(
    id=600, name="general", privacy="public", server="Test Guild", members=["a"], is_dm=False
)
DM = ChannelInfo(id=500, name="DM with bob", privacy="private", server="DM", members=[], is_dm=True)


def make_invoker(command, **agent_config):
    breaker = CircuitBreaker(5, on_trip=MagicMock())
    gate = InvocationGate(3)
    invoker = AgentInvoker("alpha", {"command": command, **agent_config}, breaker, gate)
    return invoker, breaker, gate


class TestExtractResponse:
    """Test pulling the reply out of terminal output."""

    def test_last_marker_line_and_rest(self):
        output = "> earlier\nthinking...\n\x1b[32m> Hello there\x1b[0m\nsecond line\n"
        assert extract_response(output) == "Hello there\nsecond line"

    def test_no_marker_returns_everything(self):
        assert extract_response("  plain answer \n") == "plain answer"

    def test_indented_marker(self):
        assert extract_response("log\n   >   NO_RESPONSE") == "NO_RESPONSE"


class TestParseBatchResponses:
    """Test reading the batch response file."""

    def test_valid(self):
        raw = json.dumps(
            [
                {"messageId": "2", "response": "hi"},
                {"messageId": 4, "response": "REACTION:eyes"},
            ]
        )
        responses = parse_batch_responses(raw)
        assert [(r.message_id, r.response) for r in responses] == [(2, "hi"), (4, "REACTION:eyes")]

    def test_skips_malformed_entries(self):
        raw = json.dumps(
            [
                {"response": "no id"},
                {"messageId": "x", "response": "bad id"},
                "junk",
                {"messageId": "3"},
            ]
        )
        assert parse_batch_responses(raw) == []

    def test_non_list(self):
        assert parse_batch_responses('{"messageId": "1"}') == []


class TestAgentInvoker:
    """Test the subprocess lifecycle."""

    def test_argv_placeholders(self):
        invoker, _, _ = make_invoker(["zai", "{source}", "{agent}"])
        assert invoker.build_argv("discord-dm") == ["zai", "discord-dm", "alpha"]

    @pytest.mark.asyncio
    async def test_success_reads_stdin_and_env(self):
        script = (
            'read line; printf "banner\\n> %s from %s\\n" "$line" "$ZDS_AI_AGENT_MESSAGE_AUTHOR"'
        )
        invoker, breaker, gate = make_invoker(["sh", "-c", script])
        result = await invoker.invoke("hello\n", CHANNEL, "alice")
        assert result.status == InvocationStatus.OK
        assert result.text == "hello from alice"
        assert result.exit_code == 0
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_dm_source(self):
        invoker, _, _ = make_invoker(["sh", "-c", 'printf "> %s" "$0"', "{source}"])
        result = await invoker.invoke("q", DM, "bob")
        assert result.text == "discord-dm"

    @pytest.mark.asyncio
    async def test_nonzero_exit_counts_failure(self):
        invoker, breaker, gate = make_invoker(["sh", "-c", "exit 3"])
        result = await invoker.invoke("q", CHANNEL, "alice")
        assert result.status == InvocationStatus.FAILED
        assert result.exit_code == 3
        assert breaker.consecutive_failures == 1
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_spawn_error_counts_failure(self):
        invoker, breaker, _ = make_invoker(["/nonexistent/sociobot-agent"])
        result = await invoker.invoke("q", CHANNEL, "alice")
        assert result.status == InvocationStatus.FAILED
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_failure(self):
        invoker, breaker, gate = make_invoker(["sh", "-c", "sleep 5"], timeout=0.2)
        result = await invoker.invoke("q", CHANNEL, "alice")
        assert result.status == InvocationStatus.TIMEOUT
        assert result.text is None
        assert breaker.consecutive_failures == 1
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_timeout_kills_agent_ignoring_sigterm(self):
        invoker, breaker, gate = make_invoker(
            ["sh", "-c", "trap '' TERM; exec sleep 20"], timeout=0.3
        )
        result = await asyncio.wait_for(invoker.invoke("q", CHANNEL, "alice"), timeout=5)
        assert result.status == InvocationStatus.TIMEOUT
        assert breaker.consecutive_failures == 1
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_open_breaker_skips(self):
        invoker, breaker, _ = make_invoker(["/nonexistent/sociobot-agent"])
        breaker.consecutive_failures = 5
        result = await invoker.invoke("q", CHANNEL, "alice")
        assert result.status == InvocationStatus.SKIPPED
        assert breaker.consecutive_failures == 5
        breaker.on_trip.assert_called_once()

    @pytest.mark.asyncio
    async def test_saturated_gate_skips(self):
        invoker, breaker, gate = make_invoker(["/nonexistent/sociobot-agent"])
        for _ in range(3):
            gate.try_enter()
        result = await invoker.invoke("q", CHANNEL, "alice")
        assert result.status == InvocationStatus.SKIPPED
        assert breaker.consecutive_failures == 0
        assert gate.active == 3


class TestBatchInvocation:
    """Test the batch file exchange."""

    @pytest.mark.asyncio
    async def test_file_exchange(self):
        invoker, _, _ = make_invoker(["zai"])
        seen = {}

        async def fake_invoke(query, channel_info, author, *, batch=False):
            input_path = Path(re.search(r"in the file (\S+messages\.json)", query).group(1))
            output_path = Path(re.search(r"to (\S+responses\.json)", query).group(1))
            seen["input"] = json.loads(input_path.read_text())
            seen["dir"] = input_path.parent
            seen["batch"] = batch
            output_path.write_text(json.dumps([{"messageId": "11", "response": "answer"}]))
            return AgentResult(InvocationStatus.OK, text="done", exit_code=0)

        invoker.invoke = AsyncMock(side_effect=fake_invoke)
        entries = [{"id": "11", "content": "hi"}]
        result = await invoker.invoke_batch(CHANNEL, entries)

        assert result.ok
        assert [(r.message_id, r.response) for r in result.responses] == [(11, "answer")]
        assert seen["batch"] is True
        assert seen["input"] == {
            "channel": {"id": "600", "name": "general", "type": "guild"},
            "messages": entries,
        }
        assert seen["dir"].name.startswith("discord-bot-")
        assert not seen["dir"].exists()

    @pytest.mark.asyncio
    async def test_missing_output_file(self):
        invoker, _, _ = make_invoker(["zai"])
        invoker.invoke = AsyncMock(return_value=AgentResult(InvocationStatus.OK, text=""))
        result = await invoker.invoke_batch(DM, [])
        assert result.ok
        assert result.responses == []

    @pytest.mark.asyncio
    async def test_skipped(self):
        invoker, _, _ = make_invoker(["zai"])
        invoker.invoke = AsyncMock(return_value=AgentResult(InvocationStatus.SKIPPED))
        result = await invoker.invoke_batch(DM, [])
        assert result.status == InvocationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_invalid_output_file(self):
        invoker, _, _ = make_invoker(["zai"])

        async def fake_invoke(query, channel_info, author, *, batch=False):
            Path(re.search(r"to (\S+responses\.json)", query).group(1)).write_text("not json")
            return AgentResult(InvocationStatus.OK, text="")

        invoker.invoke = AsyncMock(side_effect=fake_invoke)
        result = await invoker.invoke_batch(CHANNEL, [])
        assert result.ok
        assert result.responses == []
