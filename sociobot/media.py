"""Voice-message transcription and speech synthesis through external commands."""

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

MAX_AUDIO_SIZE = 25 * 1024 * 1024
DOWNLOAD_TIMEOUT = 30
COMMAND_TIMEOUT = 120.0


async def download_attachment(
    session: aiohttp.ClientSession, url: str, dest: Path, max_size: int = MAX_AUDIO_SIZE
) -> Path:
    """Download an attachment to ``dest``.

    Raises ValueError if the file is too large, aiohttp.ClientError if the fetch fails.
    """
    async with session.get(
        url,
        timeout=aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT),
        headers={"User-Agent": "sociobot/1.0"},
    ) as response:
        response.raise_for_status()

        content_length = response.headers.get("content-length")
        if content_length and int(content_length) > max_size:
            raise ValueError(f"Audio too large ({content_length} bytes). Maximum: {max_size} bytes")

        data = await response.read()
        if len(data) > max_size:
            raise ValueError(f"Audio too large ({len(data)} bytes). Maximum: {max_size} bytes")

    dest.write_bytes(data)
    logger.debug(f"Downloaded {url} to {dest} ({len(data)} bytes)")
    return dest


async def run_command(argv: list[str], stdin: bytes | None = None) -> str:
    """Run a helper command and return its stdout.

    Raises RuntimeError on non-zero exit or timeout, OSError if it cannot be spawned.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=COMMAND_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RuntimeError(f"{argv[0]} timed out after {COMMAND_TIMEOUT:.0f}s") from None

    if proc.returncode != 0:
        raise RuntimeError(
            f"{argv[0]} exited with code {proc.returncode}: "
            f"{stderr.decode('utf-8', errors='replace')[:500]}"
        )
    return stdout.decode("utf-8", errors="replace")


class MediaProcessor:
    """Transcribes voice attachments and synthesizes spoken replies.

    Both features are off unless their command is configured. Commands are
    argv lists; ``{input}``, ``{output}`` and ``{agent}`` placeholders are
    substituted.
    """

    def __init__(self, media_config: dict[str, Any], agent_name: str):
        self.transcribe_command: list[str] | None = media_config.get("transcribe_command")
        self.speech_command: list[str] | None = media_config.get("speech_command")
        self.agent_name = agent_name
        self.output_dir = Path(media_config.get("output_dir", "data/speech")).expanduser()

    @property
    def can_transcribe(self) -> bool:
        return bool(self.transcribe_command)

    @property
    def can_speak(self) -> bool:
        return bool(self.speech_command)

    def _format(self, command: list[str], **values: str) -> list[str]:
        return [part.format(agent=self.agent_name, **values) for part in command]

    async def transcribe(self, attachments: list[Any]) -> list[str]:
        """Transcribe every audio attachment; failures are logged and skipped."""
        if not self.transcribe_command or not attachments:
            return []

        transcriptions = []
        async with aiohttp.ClientSession() as session:
            with tempfile.TemporaryDirectory(prefix="sociobot-audio-") as temp_dir:
                for attachment in attachments:
                    dest = Path(temp_dir) / Path(attachment.filename).name
                    try:
                        await download_attachment(session, attachment.url, dest)
                        text = await run_command(
                            self._format(self.transcribe_command, input=str(dest), output="")
                        )
                    except (aiohttp.ClientError, ValueError, RuntimeError, OSError) as e:
                        logger.warning(f"Transcription failed for {attachment.filename}: {e}")
                        continue
                    text = text.strip()
                    if text:
                        logger.info(f"Transcribed {attachment.filename} ({len(text)} chars)")
                        transcriptions.append(text)
        return transcriptions

    async def synthesize(self, text: str, message_id: int) -> Path | None:
        """Render ``text`` to an audio file, or None if disabled or it failed."""
        if not self.speech_command:
            return None

        self.output_dir.mkdir(parents=True, exist_ok=True)
        output = self.output_dir / f"{self.agent_name}-{message_id}.mp3"
        try:
            await run_command(
                self._format(self.speech_command, input="-", output=str(output)),
                stdin=text.encode("utf-8"),
            )
        except (RuntimeError, OSError) as e:
            logger.warning(f"Speech synthesis failed for message {message_id}: {e}")
            return None

        if not output.exists():
            logger.warning(f"Speech command produced no file at {output}")
            return None
        return output
