"""Agent invocation through an external command-line tool."""

import asyncio
import enum
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .breaker import CircuitBreaker, InvocationGate
from .context import ChannelInfo

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ["zai", "{source}", "{agent}"]
DEFAULT_TIMEOUT = 180.0
DEFAULT_BATCH_TIMEOUT = 300.0

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


class InvocationStatus(enum.Enum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class AgentResult:
    """Outcome of one realtime invocation."""

    status: InvocationStatus
    text: str | None = None
    exit_code: int | None = None
    had_transcription: bool = False
    acl_limited: bool = False

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.OK


@dataclass
class BatchResponse:
    message_id: int
    response: str


@dataclass
class BatchResult:
    status: InvocationStatus
    responses: list[BatchResponse] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.OK


def extract_response(output: str) -> str:
    """Pull the reply out of the tool's terminal output.

    If a line starts with ``>``, the reply is that last such line (marker
    removed) plus everything after it.
    """
    cleaned = ANSI_ESCAPE.sub("", output)
    lines = cleaned.split("\n")
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].strip().startswith(">"):
            response = re.sub(r"^\s*>\s*", "", lines[i]).strip()
            following = "\n".join(lines[i + 1 :]).strip()
            if following:
                response += "\n" + following
            return response.strip()
    return cleaned.strip()


def parse_batch_responses(raw: str) -> list[BatchResponse]:
    """Parse the batch response file: ``[{"messageId": ..., "response": ...}]``."""
    data = json.loads(raw)
    if not isinstance(data, list):
        logger.warning("Batch response file is not a JSON array, ignoring")
        return []
    responses = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        try:
            message_id = int(entry["messageId"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping batch response without a valid messageId: {entry}")
            continue
        response = entry.get("response")
        if isinstance(response, str) and response:
            responses.append(BatchResponse(message_id, response))
    return responses


class AgentInvoker:
    """Runs the agent tool as a subprocess, guarded by breaker and gate."""

    def __init__(
        self,
        agent_name: str,
        agent_config: dict[str, Any],
        breaker: CircuitBreaker,
        gate: InvocationGate,
        debug: bool = False,
    ):
        self.agent_name = agent_name
        self.command = agent_config.get("command", DEFAULT_COMMAND)
        cwd = agent_config.get("cwd")
        self.cwd = str(Path(cwd.format(agent=agent_name)).expanduser()) if cwd else None
        self.timeout = float(agent_config.get("timeout", DEFAULT_TIMEOUT))
        self.batch_timeout = float(agent_config.get("batch_timeout", DEFAULT_BATCH_TIMEOUT))
        self.breaker = breaker
        self.gate = gate
        self.debug = debug

    def build_argv(self, source: str) -> list[str]:
        return [part.format(source=source, agent=self.agent_name) for part in self.command]

    async def invoke(
        self,
        query: str,
        channel_info: ChannelInfo,
        author: str,
        *,
        batch: bool = False,
    ) -> AgentResult:
        """Invoke the agent once. Never raises; failures are reported in the status."""
        if not self.breaker.check("not invoking agent"):
            return AgentResult(InvocationStatus.SKIPPED)
        if not self.gate.try_enter():
            return AgentResult(InvocationStatus.SKIPPED)

        try:
            return await self._run(query, channel_info, author, batch)
        finally:
            self.gate.leave()

    async def _run(
        self, query: str, channel_info: ChannelInfo, author: str, batch: bool
    ) -> AgentResult:
        source = "discord-dm" if channel_info.is_dm else "discord"
        argv = self.build_argv(source)
        env = {**os.environ, **channel_info.environment(author)}
        timeout = self.batch_timeout if batch else self.timeout

        logger.debug(f"Spawning: {' '.join(argv)} (cwd={self.cwd})")
        if self.debug:
            logger.debug(f"Agent query:\n{query}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            logger.error(f"Agent spawn error: {e}")
            self.breaker.record_failure("agent spawn")
            return AgentResult(InvocationStatus.FAILED)

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(query.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Agent process timed out after {timeout:.0f}s")
            self.breaker.record_failure("agent timeout")
            return AgentResult(InvocationStatus.TIMEOUT)

        output = stdout.decode("utf-8", errors="replace")
        error_output = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.error(
                f"Agent failed (code {proc.returncode}), stdout: {output[:1200]}, "
                f"stderr: {error_output[:1200]}"
            )
            self.breaker.record_failure(f"agent exit code {proc.returncode}")
            return AgentResult(InvocationStatus.FAILED, exit_code=proc.returncode)

        if self.debug:
            logger.debug(f"Agent stdout: {output[:1200]}")
            logger.debug(f"Agent stderr: {error_output[:1200]}")
        return AgentResult(
            InvocationStatus.OK, text=extract_response(output), exit_code=proc.returncode
        )

    async def invoke_batch(
        self, channel_info: ChannelInfo, entries: list[dict[str, Any]]
    ) -> BatchResult:
        """Let the agent answer a whole backlog through a file exchange.

        The agent reads ``messages.json`` and writes ``responses.json`` in a
        fresh temporary directory, which is always removed afterwards.
        """
        with tempfile.TemporaryDirectory(prefix="discord-bot-") as temp_dir:
            input_file = Path(temp_dir) / "messages.json"
            output_file = Path(temp_dir) / "responses.json"
            message_data = {
                "channel": {
                    "id": str(channel_info.id),
                    "name": channel_info.name,
                    "type": "DM" if channel_info.is_dm else "guild",
                },
                "messages": entries,
            }
            input_file.write_text(json.dumps(message_data, indent=2), encoding="utf-8")
            logger.info(f"Created input file: {input_file}")

            query = (
                f"While the bot was down, these messages were sent in {channel_info.name}. "
                f"The message data is in the file {input_file}. Please read the file and "
                "respond to whichever messages you wish to, or none at all. Write your "
                f"responses as a JSON array to {output_file} with format: "
                '[{"messageId": "123", "response": "your response"}]. '
                "Only respond to messages that warrant a response."
            )
            result = await self.invoke(query, channel_info, "batch", batch=True)
            if result.status == InvocationStatus.SKIPPED:
                return BatchResult(InvocationStatus.SKIPPED)

            if not output_file.exists():
                logger.info("No output file created by agent")
                return BatchResult(result.status)
            try:
                responses = parse_batch_responses(output_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error reading response file: {e}")
                return BatchResult(result.status)
            return BatchResult(result.status, responses)
