"""
Unit tests for prompt assembly and message helpers.

Tests slash-command parsing, chunking, error formatting, timestamps and
the prompt layout handed to agents.
"""

import errno
from datetime import datetime, timezone

import pytest

from aipal.lib.message_utils import (
    build_timestamp_prefix,
    chunk_text,
    extension_from_mime,
    format_error,
    parse_slash_command,
    prefix_text_with_timestamp,
    shell_quote,
)
from aipal.services.prompt_encoder import build_prompt, decode_prompt, encode_prompt
from aipal.services.script_sandbox import ScriptExecutionError


WINTER_NOON_UTC = datetime(2025, 1, 15, 12, 5, tzinfo=timezone.utc)
SUMMER_NOON_UTC = datetime(2025, 7, 15, 12, 5, tzinfo=timezone.utc)


class TestSlashCommands:
    """Test slash-command parsing."""

    def test_name_and_args(self):
        """Test a command with arguments."""
        command = parse_slash_command("/deploy  prod  --fast")

        assert command.name == "deploy"
        assert command.args == "prod  --fast"

    def test_bot_suffix_ignored(self):
        """Test that the platform suffix is dropped."""
        command = parse_slash_command("/reset@my_bot")

        assert command.name == "reset"
        assert command.args == ""

    def test_multiline_args(self):
        """Test that arguments may span lines."""
        command = parse_slash_command("/note first\nsecond")

        assert command.args == "first\nsecond"

    @pytest.mark.parametrize("text", ["hello", "/", "/tmp/file.txt", "/bad.name", None, ""])
    def test_not_commands(self, text):
        """Test text that is not a command."""
        assert parse_slash_command(text) is None


class TestTextHelpers:
    """Test chunking, quoting and error formatting."""

    def test_chunk_text(self):
        """Test fixed-size chunks."""
        assert chunk_text("abcdefg", 3) == ["abc", "def", "g"]
        assert chunk_text("", 3) == []
        assert len(chunk_text("x" * 7001)) == 3

    def test_shell_quote(self):
        """Test POSIX single-quote escaping."""
        assert shell_quote("it's") == "'it'\\''s'"
        assert shell_quote(42) == "'42'"

    def test_format_error_with_code_and_stderr(self):
        """Test that return code and stderr are included."""
        error = ScriptExecutionError("Script x failed (exit 2)", returncode=2, stderr="oops\n")

        assert format_error(error) == "Script x failed (exit 2)\ncode: 2\nstderr: oops"

    def test_format_error_with_errno(self):
        """Test OS errors."""
        error = FileNotFoundError(errno.ENOENT, "No such file", "parakeet-mlx")

        assert "code: 2" in format_error(error)

    def test_format_error_without_message(self):
        """Test exceptions that render empty."""
        assert format_error(RuntimeError()) == "RuntimeError()"

    def test_extension_from_mime(self):
        """Test MIME mapping."""
        assert extension_from_mime("Audio/OGG") == ".ogg"
        assert extension_from_mime("application/pdf") == ""
        assert extension_from_mime(None) == ""


class TestTimestamps:
    """Test local timestamps."""

    def test_winter_offset(self):
        """Test CET."""
        assert build_timestamp_prefix(WINTER_NOON_UTC, "Europe/Madrid") == "[20250115T1305]"

    def test_summer_offset(self):
        """Test CEST."""
        assert build_timestamp_prefix(SUMMER_NOON_UTC, "Europe/Madrid") == "[20250715T1405]"

    def test_prefix_skips_blank_text(self):
        """Test that blank text is not prefixed."""
        assert prefix_text_with_timestamp("   ", WINTER_NOON_UTC) == "   "
        assert prefix_text_with_timestamp("hi", WINTER_NOON_UTC, "UTC") == "[20250115T1205] hi"


class TestBuildPrompt:
    """Test prompt layout."""

    def test_text_only(self):
        """Test the minimal prompt."""
        prompt = build_prompt("  hello  ", artifact_root="/tmp/images")

        assert prompt == (
            "hello\n"
            "If you generate an image, save it under /tmp/images and reply with "
            "[[image:/absolute/path]] so the bot can send it."
        )

    def test_full_layout(self):
        """Test ordering of all sections."""
        prompt = build_prompt(
            "look",
            attachment_paths=["/tmp/images/a.png", "/tmp/images/b.png"],
            artifact_root="/tmp/images",
            extra_context="Output of /status:\nall good"
        )

        assert prompt.split("\n") == [
            "look",
            "User sent image file(s):",
            "- /tmp/images/a.png",
            "- /tmp/images/b.png",
            "Read images from those paths if needed.",
            "Output of /status:",
            "all good",
            "If you generate an image, save it under /tmp/images and reply with "
            "[[image:/absolute/path]] so the bot can send it.",
        ]

    def test_timestamp_prefix(self):
        """Test the optional timestamp."""
        prompt = build_prompt("hi", artifact_root="/r", time_zone="UTC", now=WINTER_NOON_UTC)

        assert prompt.startswith("[20250115T1205] hi\n")

    def test_blank_text_with_attachment(self):
        """Test that blank text adds no line and no timestamp."""
        prompt = build_prompt(" ", attachment_paths=["/r/a.png"], artifact_root="/r", time_zone="UTC")

        assert prompt.startswith("User sent image file(s):\n")

    def test_encoding_round_trip_unicode(self):
        """Test that quotes, newlines and non-ASCII survive encoding."""
        text = "¿qué tal? `echo $HOME` 'quoted'\nline"

        assert decode_prompt(encode_prompt(text)) == text
