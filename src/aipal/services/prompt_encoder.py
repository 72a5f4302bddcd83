"""Prompt assembly and shell-safe encoding of a turn's command line."""

import base64
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from aipal.lib.message_utils import prefix_text_with_timestamp, shell_quote
from aipal.models.conversation_session import CommandInvocation


PROMPT_VARIABLE = "PROMPT"
PROMPT_B64_VARIABLE = "PROMPT_B64"
PROMPT_EXPRESSION = f'"${PROMPT_VARIABLE}"'

ATTACHMENT_HEADER = "User sent image file(s):"
ATTACHMENT_FOOTER = "Read images from those paths if needed."


def artifact_instruction(artifact_root: Union[str, Path]) -> str:
    return (
        f"If you generate an image, save it under {artifact_root} and reply with "
        "[[image:/absolute/path]] so the bot can send it."
    )


def build_prompt(
    user_text: Optional[str],
    attachment_paths: Iterable[Union[str, Path]] = (),
    artifact_root: Union[str, Path] = "",
    extra_context: Optional[str] = None,
    time_zone: Optional[str] = None,
    now: Optional[datetime] = None
) -> str:
    """Assemble the final prompt text for one turn.

    Args:
        user_text: Text typed (or transcribed) by the user
        attachment_paths: Files the agent should read
        artifact_root: Directory generated images must be saved under
        extra_context: Additional context, e.g. script output
        time_zone: When set, prefix the user text with a local timestamp

    Returns:
        Prompt text, one section per line
    """
    lines = []
    trimmed = (user_text or "").strip()
    if trimmed:
        if time_zone:
            trimmed = prefix_text_with_timestamp(trimmed, now=now, time_zone=time_zone)
        lines.append(trimmed)

    attachments = [str(p) for p in attachment_paths]
    if attachments:
        lines.append(ATTACHMENT_HEADER)
        lines.extend(f"- {path}" for path in attachments)
        lines.append(ATTACHMENT_FOOTER)

    if extra_context and extra_context.strip():
        lines.append(extra_context.strip())

    lines.append(artifact_instruction(artifact_root))
    return "\n".join(lines)


def encode_prompt(prompt: str) -> str:
    return base64.b64encode(prompt.encode("utf-8")).decode("ascii")


def decode_prompt(encoded: str) -> str:
    return base64.b64decode(encoded.encode("ascii")).decode("utf-8")


def compose_command_line(invocation: CommandInvocation, agent_command: str) -> str:
    """Chain prompt decoding, markers and the agent call into one line.

    The prompt only ever appears base64-encoded on the line, so user
    content cannot break shell quoting. Markers are printed with
    surrounding newlines; the echoed command line itself contains them
    only next to literal ``\\n`` sequences and never matches.
    """
    return " ".join([
        f"{PROMPT_B64_VARIABLE}={shell_quote(invocation.prompt_base64)};",
        f'{PROMPT_VARIABLE}=$(printf %s "${PROMPT_B64_VARIABLE}" | base64 --decode);',
        f"printf '\\n{invocation.begin_marker}\\n';",
        f"{agent_command};",
        f"printf '\\n{invocation.end_marker}\\n'",
    ])
