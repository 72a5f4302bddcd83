"""Conversation manager coordinating inbound events, agents and replies."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import aiofiles.os

from aipal.lib.logging_config import get_audit_logger
from aipal.lib.message_utils import REPLY_CHUNK_SIZE, chunk_text, format_error, parse_slash_command
from aipal.models.agent_config import TurnState
from aipal.models.conversation_session import CommandInvocation
from aipal.services.agent_registry import AgentRegistry
from aipal.services.artifact_guard import contains, extract_references
from aipal.services.base_agent_adapter import BaseAgentAdapter
from aipal.services.conversation_queue import PerConversationQueue
from aipal.services.interfaces import (
    IReplySink,
    ISettingsStore,
    ITranscriber,
    TranscriberNotFoundError,
)
from aipal.services.prompt_encoder import PROMPT_EXPRESSION, build_prompt
from aipal.services.script_sandbox import (
    InvalidScriptNameError,
    SandboxError,
    ScriptNotFoundError,
    ScriptSandbox,
)
from aipal.services.session_bridge import SessionBridge, TmuxClient
from aipal.services.settings_store import JsonSettingsStore
from aipal.services.thread_state import ThreadStateStore
from aipal.services.transcriber import ParakeetTranscriber


logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

TEXT_ERROR_LABEL = "Error processing response."
AUDIO_ERROR_LABEL = "Error processing audio."
IMAGE_ERROR_LABEL = "Error processing image."
COMMAND_ERROR_LABEL = "Error processing command."
SCRIPT_ERROR_LABEL = "Error running script."

NO_RESPONSE = "(no response)"
NO_OUTPUT = "(no output)"
EMPTY_TRANSCRIPT = "I couldn't transcribe the audio."
DEFAULT_IMAGE_PROMPT = "User sent an image."
TYPING_INTERVAL_SECONDS = 4.0

# Values accepted by /model and /thinking to go back to the agent default.
RESET_KEYWORDS = ("default", "reset", "none", "clear")

SETTING_AGENT = "agent"
SETTING_MODEL = "model"
SETTING_THINKING = "thinking"


class ConversationManager:
    """Routes chat events of every conversation through one coordinating path.

    Each conversation's events run strictly one after another through a
    per-conversation queue. A turn builds the prompt, runs the active agent
    inside the conversation's tmux session, remembers the agent's thread
    id and replies with the cleaned text plus any contained artifacts.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        bridge: SessionBridge,
        sandbox: ScriptSandbox,
        settings_store: ISettingsStore,
        artifact_root: Union[str, Path],
        transcriber: Optional[ITranscriber] = None,
        thread_state: Optional[ThreadStateStore] = None,
        queue: Optional[PerConversationQueue] = None,
        turn_timeout: Optional[float] = None,
        time_zone: Optional[str] = None,
        forward_script_output: bool = False,
        typing_interval: float = TYPING_INTERVAL_SECONDS
    ):
        """Initialize the conversation manager.

        Args:
            registry: Resolves agent names to adapters
            bridge: Runs composed command lines in tmux sessions
            sandbox: Runs slash-command scripts
            settings_store: Holds the active agent, model and thinking level
            artifact_root: Directory agent artifacts and downloads must live in
            transcriber: Speech-to-text engine for audio messages
            thread_state: Continuity ids per conversation
            queue: Per-conversation task serialization
            turn_timeout: Timeout for agents that do not set their own
            time_zone: Prefix user text with a timestamp in this zone
            forward_script_output: Send script output to the agent instead of the user
            typing_interval: Seconds between typing indicator refreshes
        """
        self.logger = logging.getLogger(__name__)
        self.registry = registry
        self.bridge = bridge
        self.sandbox = sandbox
        self.settings_store = settings_store
        self.artifact_root = str(artifact_root)
        self.transcriber = transcriber
        self.threads = thread_state or ThreadStateStore()
        self.queue = queue or PerConversationQueue()
        self.turn_timeout = turn_timeout
        self.time_zone = time_zone
        self.forward_script_output = forward_script_output
        self.typing_interval = typing_interval

    @classmethod
    def from_config(cls, config, transcriber: Optional[ITranscriber] = None) -> "ConversationManager":
        """Build a manager and its default collaborators from an ``AipalConfig``."""
        registry = AgentRegistry(config.agents, default_agent=config.agent)
        bridge = SessionBridge(
            tmux=TmuxClient(config.session.tmux_command, config.session.history_lines),
            session_prefix=config.session.session_prefix,
            poll_interval=config.session.poll_interval
        )
        sandbox = ScriptSandbox(
            config.scripts.directory,
            timeout_seconds=config.scripts.timeout_seconds,
            max_output_bytes=config.scripts.max_output_bytes
        )
        if transcriber is None:
            transcriber = ParakeetTranscriber(
                command=config.transcription.command,
                model=config.transcription.model,
                timeout_seconds=config.transcription.timeout_seconds
            )
        artifact_root = Path(config.artifacts.image_dir).expanduser().resolve()
        artifact_root.mkdir(parents=True, exist_ok=True)
        return cls(
            registry=registry,
            bridge=bridge,
            sandbox=sandbox,
            settings_store=JsonSettingsStore(config.settings_store.path),
            artifact_root=artifact_root,
            transcriber=transcriber,
            turn_timeout=config.session.turn_timeout,
            time_zone=config.prompt.time_zone if config.prompt.timestamps else None,
            forward_script_output=config.scripts.forward_to_agent
        )

    # Inbound events

    def handle_text(self, conversation_id, text: str, sink: IReplySink) -> Optional[asyncio.Task]:
        """Queue a text message; slash commands are routed to ``handle_command``."""
        text = (text or "").strip()
        if not text:
            return None
        if parse_slash_command(text) is not None:
            return self.handle_command(conversation_id, text, sink)
        return self.queue.enqueue(
            conversation_id,
            lambda: self._process_turn(conversation_id, sink, text, error_label=TEXT_ERROR_LABEL)
        )

    def handle_audio(self, conversation_id, audio_path: str, sink: IReplySink) -> asyncio.Task:
        """Queue a downloaded audio file for transcription and an agent turn."""
        return self.queue.enqueue(conversation_id, lambda: self._process_audio(conversation_id, audio_path, sink))

    def handle_image(
        self,
        conversation_id,
        image_path: str,
        caption: Optional[str],
        sink: IReplySink
    ) -> asyncio.Task:
        """Queue a downloaded image as an attachment of an agent turn."""
        return self.queue.enqueue(
            conversation_id,
            lambda: self._process_image(conversation_id, image_path, caption, sink)
        )

    def handle_command(self, conversation_id, text: str, sink: IReplySink) -> Optional[asyncio.Task]:
        """Queue a ``/command``; returns None when ``text`` is not one."""
        command = parse_slash_command(text)
        if command is None:
            return None
        return self.queue.enqueue(
            conversation_id,
            lambda: self._process_command(conversation_id, command.name, command.args, sink)
        )

    async def shutdown(self) -> None:
        """Wait for every queued event to finish."""
        await self.queue.drain()

    # Event processing (runs inside the queue)

    async def _process_turn(
        self,
        conversation_id,
        sink: IReplySink,
        prompt: str,
        image_paths: Iterable[str] = (),
        extra_context: Optional[str] = None,
        error_label: str = TEXT_ERROR_LABEL
    ) -> None:
        async with self._typing(sink):
            try:
                response = await self.run_agent(conversation_id, prompt, image_paths, extra_context)
            except Exception as e:
                self.logger.error(f"Turn failed for conversation {conversation_id}: {e}", exc_info=True)
                await self._reply_with_error(sink, error_label, e)
                return
        await self._reply_with_response(sink, response)

    async def _process_audio(self, conversation_id, audio_path: str, sink: IReplySink) -> None:
        try:
            async with self._typing(sink):
                if self.transcriber is None:
                    await sink.reply("Audio transcription is not configured.")
                    return
                try:
                    text = await self.transcriber.transcribe(audio_path)
                except TranscriberNotFoundError as e:
                    command = getattr(self.transcriber, "command", "the transcriber")
                    await self._reply_with_error(sink, f"I can't find {command}. Install it and try again.", e)
                    return
                except Exception as e:
                    self.logger.error(f"Transcription failed: {e}", exc_info=True)
                    await self._reply_with_error(sink, AUDIO_ERROR_LABEL, e)
                    return

                if not text.strip():
                    await sink.reply(EMPTY_TRANSCRIPT)
                    return

                try:
                    response = await self.run_agent(conversation_id, text)
                except Exception as e:
                    self.logger.error(f"Turn failed for conversation {conversation_id}: {e}", exc_info=True)
                    await self._reply_with_error(sink, AUDIO_ERROR_LABEL, e)
                    return
            await self._reply_with_response(sink, response)
        finally:
            await self._remove_file(audio_path)

    async def _process_image(self, conversation_id, image_path: str, caption: Optional[str], sink: IReplySink) -> None:
        image_paths = [str(image_path)]
        if not contains(self.artifact_root, image_path):
            self.logger.warning(f"Dropping image outside {self.artifact_root}: {image_path}")
            audit_logger.log_security_event(
                event_type="attachment_outside_root",
                severity="medium",
                description="Inbound image is not inside the artifact root",
                conversation_id=str(conversation_id),
                metadata={"path": str(image_path)}
            )
            image_paths = []
        prompt = (caption or "").strip() or DEFAULT_IMAGE_PROMPT
        await self._process_turn(
            conversation_id, sink, prompt,
            image_paths=image_paths,
            error_label=IMAGE_ERROR_LABEL
        )

    async def _process_command(self, conversation_id, name: str, args: str, sink: IReplySink) -> None:
        handlers = {
            "start": self._command_start,
            "reset": self._command_reset,
            "agent": self._command_agent,
            "model": self._command_model,
            "thinking": self._command_thinking,
            "sessions": self._command_sessions,
        }
        handler = handlers.get(name.lower())
        try:
            if handler is not None:
                await handler(conversation_id, args, sink)
            else:
                await self._command_script(conversation_id, name, args, sink)
        except Exception as e:
            self.logger.error(f"Command /{name} failed: {e}", exc_info=True)
            await self._reply_with_error(sink, COMMAND_ERROR_LABEL, e)

    # Builtin commands

    async def _command_start(self, conversation_id, args: str, sink: IReplySink) -> None:
        adapter, _ = await self._active_agent()
        await sink.reply(f"Ready. Send a message and I will pass it to {adapter.label}.")

    async def _command_reset(self, conversation_id, args: str, sink: IReplySink) -> None:
        await self.reset(conversation_id, sink)

    async def _command_agent(self, conversation_id, args: str, sink: IReplySink) -> None:
        available = ", ".join(self.registry.list_agents())
        name = args.strip()
        if not name:
            adapter, _ = await self._active_agent()
            await sink.reply(f"Current agent: {adapter.label}. Available: {available}")
            return
        if not self.registry.is_known(name):
            await sink.reply(f"Unknown agent: {name}. Available: {available}")
            return

        agent_id = self.registry.normalize(name)
        # Models and thread ids belong to a single agent.
        await self.settings_store.update_config({
            SETTING_AGENT: agent_id,
            SETTING_MODEL: None,
            SETTING_THINKING: None,
        })
        self.threads.clear(conversation_id)
        audit_logger.log_session_event(
            event_type="agent_switched",
            conversation_id=str(conversation_id),
            action="set_agent",
            result="success",
            metadata={"agent_id": agent_id}
        )
        await sink.reply(f"Agent set to {self.registry.label(agent_id)}.")

    async def _command_model(self, conversation_id, args: str, sink: IReplySink) -> None:
        await self._set_knob(SETTING_MODEL, "Model", args, sink)

    async def _command_thinking(self, conversation_id, args: str, sink: IReplySink) -> None:
        await self._set_knob(SETTING_THINKING, "Thinking level", args, sink)

    async def _set_knob(self, key: str, title: str, args: str, sink: IReplySink) -> None:
        value = args.strip()
        if not value:
            settings = await self.settings_store.read_config()
            await sink.reply(f"{title}: {settings.get(key) or 'default'}")
            return
        if value.lower() in RESET_KEYWORDS:
            await self.settings_store.update_config({key: None})
            await sink.reply(f"{title} reset to default.")
            return
        await self.settings_store.update_config({key: value})
        await sink.reply(f"{title} set to {value}.")

    async def _command_sessions(self, conversation_id, args: str, sink: IReplySink) -> None:
        adapter, _ = await self._active_agent()
        list_command = adapter.list_sessions_command()
        if list_command is None:
            await sink.reply(f"{adapter.label} does not support session listing.")
            return

        async with self._typing(sink):
            invocation = CommandInvocation.create("")
            raw = await self.bridge.run(
                conversation_id,
                invocation,
                adapter.wrap_invocation(list_command),
                self._timeout_for(adapter),
                adapter.label
            )
        thread_id = adapter.parse_session_list(raw)
        listing = raw.strip()
        if listing:
            await self._reply_chunks(sink, listing)
        if thread_id:
            self.threads.set(conversation_id, thread_id)
            await sink.reply(f"Continuing session {thread_id}.")
        else:
            await sink.reply("No sessions found.")

    async def _command_script(self, conversation_id, name: str, args: str, sink: IReplySink) -> None:
        async with self._typing(sink):
            try:
                output = await self.sandbox.run(name, args)
            except (InvalidScriptNameError, ScriptNotFoundError):
                await sink.reply(f"Unknown command: /{name}")
                return
            except SandboxError as e:
                self.logger.warning(f"Script /{name} failed: {e}")
                await self._reply_with_error(sink, e.user_message, e)
                return

        if self.forward_script_output:
            invocation = f"/{name} {args}".strip()
            await self._process_turn(
                conversation_id, sink, invocation,
                extra_context=f"Output of {invocation}:\n{output or NO_OUTPUT}",
                error_label=SCRIPT_ERROR_LABEL
            )
            return
        await self._reply_chunks(sink, output or NO_OUTPUT)

    # Operations

    async def reset(self, conversation_id, sink: Optional[IReplySink] = None) -> bool:
        """Forget the conversation's thread and destroy its tmux session.

        Returns:
            Whether a session existed
        """
        self.threads.clear(conversation_id)
        existed = await self.bridge.reset(conversation_id)
        audit_logger.log_session_event(
            event_type="session_reset",
            conversation_id=str(conversation_id),
            action="reset",
            result="killed" if existed else "absent"
        )
        if sink is not None:
            await sink.reply("Session reset." if existed else "No active session.")
        return existed

    async def run_agent(
        self,
        conversation_id,
        prompt: str,
        image_paths: Iterable[str] = (),
        extra_context: Optional[str] = None
    ) -> str:
        """Run one agent turn and return the agent's reply text.

        Args:
            conversation_id: Conversation whose session and thread are used
            prompt: User text
            image_paths: Attachments the agent should read
            extra_context: Additional prompt section, e.g. script output

        Returns:
            Parsed reply text, or the raw captured output when nothing parsed

        Raises:
            AgentTimeoutError: If the agent does not finish in time
            TmuxCommandError: If the tmux session cannot be driven
        """
        adapter, settings = await self._active_agent()
        full_prompt = build_prompt(
            prompt,
            attachment_paths=image_paths,
            artifact_root=self.artifact_root,
            extra_context=extra_context,
            time_zone=self.time_zone
        )
        invocation = CommandInvocation.create(full_prompt)
        state = TurnState(
            conversation_id=str(conversation_id),
            thread_id=self.threads.get(conversation_id),
            prompt_expression=PROMPT_EXPRESSION,
            model=settings.get(SETTING_MODEL),
            thinking=settings.get(SETTING_THINKING)
        )
        agent_command = adapter.wrap_invocation(adapter.build_command(full_prompt, state))

        started = time.monotonic()
        try:
            output = await self.bridge.run(
                conversation_id, invocation, agent_command, self._timeout_for(adapter), adapter.label
            )
        except Exception as e:
            audit_logger.log_agent_event(
                event_type="agent_turn",
                agent_id=adapter.agent_id,
                action="run",
                result=type(e).__name__,
                execution_time_ms=int((time.monotonic() - started) * 1000),
                metadata={"conversation_id": str(conversation_id)}
            )
            raise

        parsed = adapter.parse_output(output)
        self.threads.update(conversation_id, parsed)
        audit_logger.log_agent_event(
            event_type="agent_turn",
            agent_id=adapter.agent_id,
            action="resume" if state.thread_id else "start",
            result="success",
            execution_time_ms=int((time.monotonic() - started) * 1000),
            metadata={"conversation_id": str(conversation_id), "saw_json": parsed.saw_json}
        )
        return parsed.text or output

    # Helpers

    async def _active_agent(self) -> Tuple[BaseAgentAdapter, Dict[str, Any]]:
        settings = await self.settings_store.read_config()
        return self.registry.get(settings.get(SETTING_AGENT)), settings

    def _timeout_for(self, adapter: BaseAgentAdapter) -> float:
        if "timeout_seconds" in adapter.config.model_fields_set or self.turn_timeout is None:
            return adapter.timeout_seconds
        return self.turn_timeout

    @asynccontextmanager
    async def _typing(self, sink: IReplySink):
        """Refresh the sink's typing indicator until the block exits."""
        async def keep_typing():
            while True:
                try:
                    await sink.typing()
                except Exception as e:
                    self.logger.warning(f"Typing indicator failed: {e}")
                await asyncio.sleep(self.typing_interval)

        task = asyncio.create_task(keep_typing())
        try:
            yield
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _reply_chunks(self, sink: IReplySink, text: str) -> None:
        for chunk in chunk_text(text, REPLY_CHUNK_SIZE):
            await sink.reply(chunk)

    async def _reply_with_response(self, sink: IReplySink, response: Optional[str]) -> None:
        extracted = extract_references(response or "", self.artifact_root)
        text = extracted.cleaned_text.strip()
        if text:
            await self._reply_chunks(sink, text)

        for image_path in extracted.paths:
            try:
                if not await aiofiles.os.path.isfile(image_path):
                    self.logger.warning(f"Artifact is not a regular file: {image_path}")
                    continue
                await sink.reply_photo(image_path)
            except Exception as e:
                self.logger.warning(f"Failed to send image {image_path}: {e}")

        if not text and not extracted.paths:
            await sink.reply(NO_RESPONSE)

    async def _reply_with_error(self, sink: IReplySink, label: str, error: BaseException) -> None:
        text = f"{label}\n{format_error(error)}".strip()
        await self._reply_chunks(sink, text)

    async def _remove_file(self, path: Optional[str]) -> None:
        if not path:
            return
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove {path}: {e}")
