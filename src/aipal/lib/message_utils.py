"""Text helpers shared by the conversation services."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo


DEFAULT_TIME_ZONE = "Europe/Madrid"
REPLY_CHUNK_SIZE = 3500

SLASH_COMMAND_RE = re.compile(r"^/([A-Za-z0-9_-]+)(?:@[\w]+)?(?:\s+([\s\S]*))?$")

MIME_EXTENSIONS = {
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


@dataclass(frozen=True)
class SlashCommand:
    """A parsed ``/name args`` message."""

    name: str
    args: str = ""


def shell_quote(value) -> str:
    """Quote a value for a POSIX shell using single quotes."""
    escaped = str(value).replace("'", "'\\''")
    return f"'{escaped}'"


def parse_slash_command(text: Optional[str]) -> Optional[SlashCommand]:
    """Parse ``/name[@bot] args``; returns None for anything else.

    The optional ``@suffix`` added by chat platforms is ignored.
    """
    if not text:
        return None
    match = SLASH_COMMAND_RE.match(text.strip())
    if not match:
        return None
    return SlashCommand(name=match.group(1), args=(match.group(2) or "").strip())


def chunk_text(text: str, size: int = REPLY_CHUNK_SIZE) -> List[str]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [text[i:i + size] for i in range(0, len(text), size)]


def format_error(error: Optional[BaseException]) -> str:
    """Render an exception with its code and diagnostic stream, if any."""
    if error is None:
        return "Unknown error"
    parts = []
    message = str(error)
    if message:
        parts.append(message)
    code = getattr(error, "returncode", None)
    if code is None:
        code = getattr(error, "errno", None)
    if code is not None:
        parts.append(f"code: {code}")
    stderr = getattr(error, "stderr", None)
    if stderr:
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        parts.append(f"stderr: {str(stderr).strip()}")
    return "\n".join(p for p in parts if p) or repr(error)


def extension_from_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return ""
    return MIME_EXTENSIONS.get(mime_type.lower(), "")


def build_timestamp_prefix(now: Optional[datetime] = None, time_zone: str = DEFAULT_TIME_ZONE) -> str:
    """Return ``[YYYYMMDDTHHMM]`` for ``now`` in ``time_zone``."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(time_zone))
    return f"[{local:%Y%m%dT%H%M}]"


def prefix_text_with_timestamp(
    text: Optional[str],
    now: Optional[datetime] = None,
    time_zone: str = DEFAULT_TIME_ZONE
) -> str:
    """Prefix non-blank text with a timestamp; blank text is returned as is."""
    raw = text or ""
    if not raw.strip():
        return raw
    return f"{build_timestamp_prefix(now, time_zone)} {raw.lstrip()}"
