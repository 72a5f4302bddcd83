"""Sandboxed execution of whitelisted slash-command scripts.

A script is addressed by name only. The name is checked against a strict
pattern before any filesystem access, the resolved path must stay inside
the scripts root, and the script runs without a shell, bounded by a
timeout and an output size cap.
"""

import asyncio
import logging
import os
import re
import shlex
from pathlib import Path
from typing import List, Optional, Union

from aipal.lib.logging_config import get_audit_logger
from aipal.lib.observability import get_bridge_metrics, get_tracer
from aipal.models.conversation_session import ScriptInvocation
from aipal.services.artifact_guard import contains


logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

SCRIPT_NAME_RE = re.compile(r"[A-Za-z0-9_-]+")
READ_CHUNK_SIZE = 4096


class SandboxError(Exception):
    """Base exception for script sandbox failures."""

    user_message = "Script failed."

    def __init__(self, message: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.name = name


class InvalidScriptNameError(SandboxError):
    user_message = "Invalid script name."


class ScriptOutsideRootError(SandboxError):
    user_message = "Script is outside the scripts directory."


class ScriptNotFoundError(SandboxError):
    user_message = "Script not found."


class ScriptNotExecutableError(SandboxError):
    user_message = "Script is not executable."


class ScriptArgumentError(SandboxError):
    user_message = "Could not parse script arguments."


class ScriptTimeoutError(SandboxError):
    user_message = "Script timed out."


class ScriptOutputLimitError(SandboxError):
    user_message = "Script output exceeded the size limit."


class ScriptExecutionError(SandboxError):
    """The script ran but exited with a non-zero status."""

    user_message = "Script exited with an error."

    def __init__(self, message: Optional[str] = None, name: Optional[str] = None,
                 returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message, name)
        self.returncode = returncode
        self.stderr = stderr


def split_arguments(raw_args: Optional[str]) -> List[str]:
    """Tokenize arguments shell-style without ever invoking a shell."""
    if not raw_args or not raw_args.strip():
        return []
    try:
        return shlex.split(raw_args, posix=True)
    except ValueError as e:
        raise ScriptArgumentError(f"Could not parse script arguments: {e}") from e


class ScriptSandbox:
    """Resolves, validates and runs scripts found under a fixed root."""

    def __init__(
        self,
        scripts_root: Union[str, Path],
        timeout_seconds: float = 30.0,
        max_output_bytes: int = 64 * 1024
    ):
        self.scripts_root = Path(scripts_root).expanduser()
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    def _reject(self, error: SandboxError) -> SandboxError:
        audit_logger.log_security_event(
            event_type="script_rejected",
            severity="medium",
            description=str(error),
            metadata={"script": error.name, "kind": type(error).__name__}
        )
        get_bridge_metrics().record_script(error.name or "", "rejected")
        return error

    def validate(self, name: str, raw_args: Optional[str] = None) -> ScriptInvocation:
        """Check a script name and its arguments without running anything.

        Raises:
            SandboxError: One of the distinct rejection kinds
        """
        if not name or not SCRIPT_NAME_RE.fullmatch(name):
            raise self._reject(InvalidScriptNameError(f"Invalid script name: {name!r}", name=name))

        root = os.path.realpath(self.scripts_root)
        candidate = os.path.realpath(os.path.join(root, name))
        if not contains(root, candidate) or candidate == root:
            raise self._reject(ScriptOutsideRootError(f"Script {name} resolves outside {root}", name=name))

        if not os.path.isfile(candidate):
            raise ScriptNotFoundError(f"Script not found: {name}", name=name)
        if not os.access(candidate, os.X_OK):
            raise ScriptNotExecutableError(f"Script is not executable: {name}", name=name)

        return ScriptInvocation(
            name=name,
            path=Path(candidate),
            argv=split_arguments(raw_args),
            timeout_seconds=self.timeout_seconds,
            max_output_bytes=self.max_output_bytes
        )

    async def run(self, name: str, raw_args: Optional[str] = None) -> str:
        """Validate and execute a script, returning its trimmed stdout."""
        invocation = self.validate(name, raw_args)
        with get_tracer().start_as_current_span(
            "script.run",
            attributes={"script.name": name, "script.argc": len(invocation.argv)}
        ):
            try:
                output = await self._execute(invocation)
            except SandboxError as e:
                get_bridge_metrics().record_script(name, type(e).__name__)
                raise
            get_bridge_metrics().record_script(name, "success")
            return output

    async def _execute(self, invocation: ScriptInvocation) -> str:
        logger.info(f"Running script {invocation.name}", extra={"argv": invocation.argv})
        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.scripts_root)
            )
        except PermissionError as e:
            raise ScriptNotExecutableError(f"Script is not executable: {invocation.name}",
                                           name=invocation.name) from e
        except FileNotFoundError as e:
            raise ScriptNotFoundError(f"Script not found: {invocation.name}", name=invocation.name) from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + invocation.timeout_seconds
        try:
            stdout, stderr = await asyncio.wait_for(
                asyncio.gather(
                    self._read_capped(process.stdout, invocation),
                    self._read_capped(process.stderr, invocation)
                ),
                timeout=invocation.timeout_seconds
            )
            # Closed pipes do not mean the script exited; it gets what is left of the budget.
            await asyncio.wait_for(process.wait(), timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ScriptTimeoutError(
                f"Script {invocation.name} timed out after {invocation.timeout_seconds}s",
                name=invocation.name
            )
        except ScriptOutputLimitError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            error_msg = stderr.decode("utf-8", errors="replace").strip()
            raise ScriptExecutionError(
                f"Script {invocation.name} failed (exit {process.returncode})",
                name=invocation.name,
                returncode=process.returncode,
                stderr=error_msg
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def _read_capped(self, stream: asyncio.StreamReader, invocation: ScriptInvocation) -> bytes:
        data = bytearray()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return bytes(data)
            data.extend(chunk)
            if len(data) > invocation.max_output_bytes:
                raise ScriptOutputLimitError(
                    f"Script {invocation.name} produced more than {invocation.max_output_bytes} bytes",
                    name=invocation.name
                )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
