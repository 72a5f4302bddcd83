"""Abstract interface for speech-to-text engines."""

from abc import ABC, abstractmethod


class TranscriptionError(Exception):
    """Raised when an audio file could not be transcribed."""

    def __init__(self, message: str, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class TranscriberNotFoundError(TranscriptionError):
    """The transcription binary is not installed."""
    pass


class ITranscriber(ABC):
    """Turns an audio file into text."""

    @abstractmethod
    async def transcribe(self, audio_path: str) -> str:
        """Return the trimmed transcript of ``audio_path``."""
        pass
