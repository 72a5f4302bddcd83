"""Interfaces of the external collaborators consumed by the core."""

from .reply_sink import IReplySink
from .settings_store import ISettingsStore
from .transcriber import ITranscriber, TranscriberNotFoundError, TranscriptionError

__all__ = [
    "IReplySink",
    "ISettingsStore",
    "ITranscriber",
    "TranscriberNotFoundError",
    "TranscriptionError",
]
