"""
Unit tests for the slash-command script sandbox.

Scripts are real executables written to a temporary scripts root.
"""

import os
import stat
import time
from unittest.mock import patch

import pytest

from aipal.services.script_sandbox import (
    InvalidScriptNameError,
    ScriptArgumentError,
    ScriptExecutionError,
    ScriptNotExecutableError,
    ScriptNotFoundError,
    ScriptOutputLimitError,
    ScriptOutsideRootError,
    ScriptSandbox,
    ScriptTimeoutError,
    split_arguments,
)


def write_script(root, name, body, executable=True):
    path = root / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    if executable:
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def scripts_root(tmp_path):
    """Scripts directory with a few executables."""
    root = tmp_path / "scripts"
    root.mkdir()
    write_script(root, "echo-args", 'for a in "$@"; do printf "[%s]\\n" "$a"; done')
    write_script(root, "fail", 'echo "bad thing" >&2; exit 3')
    write_script(root, "sleepy", "sleep 5")
    write_script(root, "chatty", "yes aipal | head -c 100000")
    write_script(root, "detached", "exec >&- 2>&-; sleep 5")
    write_script(root, "plain", "echo hi", executable=False)
    return root


@pytest.fixture
def sandbox(scripts_root):
    """Sandbox with a short timeout and small output cap."""
    return ScriptSandbox(scripts_root, timeout_seconds=1.0, max_output_bytes=1024)


class TestNameValidation:
    """Test rejection before any filesystem access."""

    @pytest.mark.parametrize("name", [
        "../etc/passwd", "a/b", "..", "with space", "tab\tname", "", "semi;colon", "echo-args\n", "\nfail",
    ])
    def test_invalid_names_rejected_without_filesystem_access(self, sandbox, name):
        """Test that bad names never reach path resolution."""
        with patch("aipal.services.script_sandbox.os.path.realpath") as realpath, \
                patch("aipal.services.script_sandbox.os.path.isfile") as isfile:
            with pytest.raises(InvalidScriptNameError):
                sandbox.validate(name)

        realpath.assert_not_called()
        isfile.assert_not_called()

    def test_symlink_outside_root(self, sandbox, scripts_root, tmp_path):
        """Test that a link leaving the root is refused by the containment check."""
        outside = write_script(tmp_path, "outside", "echo escaped")
        os.symlink(outside, scripts_root / "escape")

        with pytest.raises(ScriptOutsideRootError):
            sandbox.validate("escape")

    def test_missing_script(self, sandbox):
        """Test the not-found kind."""
        with pytest.raises(ScriptNotFoundError) as exc_info:
            sandbox.validate("nope")

        assert exc_info.value.user_message == "Script not found."

    def test_not_executable(self, sandbox):
        """Test the not-executable kind."""
        with pytest.raises(ScriptNotExecutableError):
            sandbox.validate("plain")

    def test_directory_is_not_a_script(self, sandbox, scripts_root):
        """Test that directories are not runnable."""
        (scripts_root / "subdir").mkdir()

        with pytest.raises(ScriptNotFoundError):
            sandbox.validate("subdir")

    def test_validate_returns_invocation(self, sandbox, scripts_root):
        """Test the validated invocation."""
        invocation = sandbox.validate("echo-args", "one 'two three'")

        assert invocation.name == "echo-args"
        assert invocation.argv == ["one", "two three"]
        assert invocation.command[0] == os.path.realpath(scripts_root / "echo-args")

    def test_distinct_user_messages(self):
        """Test that each rejection kind has its own message."""
        kinds = [
            InvalidScriptNameError, ScriptOutsideRootError, ScriptNotFoundError,
            ScriptNotExecutableError, ScriptArgumentError, ScriptTimeoutError,
            ScriptOutputLimitError, ScriptExecutionError,
        ]

        assert len({kind.user_message for kind in kinds}) == len(kinds)


class TestArgumentSplitting:
    """Test shell-style tokenization."""

    def test_quotes_and_escapes(self):
        """Test quote- and backslash-aware splitting."""
        assert split_arguments(r'a "b c" d\ e \'f\'') == ["a", "b c", "d e", "'f'"]

    def test_blank(self):
        """Test empty argument strings."""
        assert split_arguments("   ") == []
        assert split_arguments(None) == []

    def test_unbalanced_quote(self):
        """Test that unbalanced quotes are a distinct error."""
        with pytest.raises(ScriptArgumentError):
            split_arguments('"unterminated')


class TestExecution:
    """Test running scripts."""

    @pytest.mark.asyncio
    async def test_arguments_are_not_shell_interpreted(self, sandbox):
        """Test that shell syntax in arguments is passed literally."""
        output = await sandbox.run("echo-args", "'$(whoami)' \"a b\" ;ls")

        assert output == "[$(whoami)]\n[a b]\n[;ls]"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, sandbox):
        """Test that failures carry return code and stderr."""
        with pytest.raises(ScriptExecutionError) as exc_info:
            await sandbox.run("fail")

        assert exc_info.value.returncode == 3
        assert exc_info.value.stderr == "bad thing"

    @pytest.mark.asyncio
    async def test_timeout(self, scripts_root):
        """Test that slow scripts are killed."""
        sandbox = ScriptSandbox(scripts_root, timeout_seconds=0.2)

        with pytest.raises(ScriptTimeoutError):
            await sandbox.run("sleepy")

    @pytest.mark.asyncio
    async def test_timeout_covers_process_exit(self, scripts_root):
        """Test that closing the output streams does not extend the timeout."""
        sandbox = ScriptSandbox(scripts_root, timeout_seconds=1.0)
        started = time.monotonic()

        with pytest.raises(ScriptTimeoutError):
            await sandbox.run("detached")

        assert time.monotonic() - started < 1.8

    @pytest.mark.asyncio
    async def test_output_cap(self, sandbox):
        """Test that oversized output is refused."""
        with pytest.raises(ScriptOutputLimitError):
            await sandbox.run("chatty")
