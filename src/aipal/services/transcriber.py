"""Speech-to-text through a parakeet-mlx compatible command."""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import aiofiles
import aiofiles.os

from aipal.services.interfaces.transcriber import (
    ITranscriber,
    TranscriberNotFoundError,
    TranscriptionError,
)


logger = logging.getLogger(__name__)


class ParakeetTranscriber(ITranscriber):
    """Runs the transcription CLI and reads back its text output."""

    def __init__(
        self,
        command: str = "parakeet-mlx",
        model: Optional[str] = None,
        timeout_seconds: float = 120.0,
        output_dir: Optional[str] = None
    ):
        self.command = command
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.output_dir = Path(output_dir or os.path.join(tempfile.gettempdir(), "parakeet-mlx"))

    def build_args(self, audio_path: str, output_template: str) -> List[str]:
        args = [
            audio_path,
            "--output-dir", str(self.output_dir),
            "--output-format", "txt",
            "--output-template", output_template,
        ]
        if self.model:
            args.extend(["--model", self.model])
        return args

    async def transcribe(self, audio_path: str) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_template = f"parakeet-{uuid4()}"
        args = self.build_args(audio_path, output_template)

        try:
            process = await asyncio.create_subprocess_exec(
                self.command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise TranscriberNotFoundError(f"{self.command} not found", stderr=str(e)) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TranscriptionError(f"Transcription timed out after {self.timeout_seconds}s")

        if process.returncode != 0:
            raise TranscriptionError(
                f"{self.command} failed (exit {process.returncode})",
                returncode=process.returncode,
                stderr=stderr.decode("utf-8", errors="ignore")
            )

        output_path = self.output_dir / f"{output_template}.txt"
        try:
            async with aiofiles.open(output_path, 'r') as f:
                text = await f.read()
        except FileNotFoundError as e:
            raise TranscriptionError(f"Transcript not written: {output_path}") from e
        finally:
            if await aiofiles.os.path.exists(output_path):
                await aiofiles.os.remove(output_path)

        return text.strip()
