"""
Main CLI application for aipal.

Drives agent conversations from the terminal through the same
conversation manager a chat transport would use, and manages the aipal
configuration.
"""

import asyncio
import logging
import shlex
import shutil
import sys
from pathlib import Path
from typing import Optional
from uuid import uuid4

import click
import yaml

from aipal.cli.console import ConsoleReplySink
from aipal.lib.config import ConfigurationError, initialize_config
from aipal.lib.logging_config import get_audit_logger, setup_logging
from aipal.lib.observability import initialize_telemetry, shutdown_telemetry
from aipal.services.agent_registry import AgentRegistry
from aipal.services.conversation_orchestrator import ConversationManager
from aipal.services.script_sandbox import SandboxError, ScriptSandbox


logger = logging.getLogger("aipal.cli")
audit_logger = get_audit_logger()

EXIT_WORDS = ("exit", "quit")


class AipalApplication:
    """Main aipal application manager."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config_manager = None
        self.config = None
        self.manager: Optional[ConversationManager] = None

    def initialize(self) -> None:
        """Load configuration and set up logging, telemetry and services."""
        try:
            self.config_manager = initialize_config(self.config_path)
            self.config = self.config_manager.get_config()

            setup_logging(self.config.logging.model_dump())
            initialize_telemetry(self.config.observability.model_dump())
            logger.info("Observability initialized")

            self.manager = ConversationManager.from_config(self.config)

            audit_logger.log_session_event(
                event_type="system_startup",
                conversation_id="system",
                action="initialize",
                result="success"
            )
        except Exception as e:
            logger.error(f"Failed to initialize aipal: {e}")
            audit_logger.log_session_event(
                event_type="system_startup",
                conversation_id="system",
                action="initialize",
                result="failed",
                metadata={"error": str(e)}
            )
            raise

    async def shutdown(self) -> None:
        """Wait for queued work and flush telemetry."""
        try:
            if self.manager:
                await self.manager.shutdown()
            shutdown_telemetry()
            logger.info("aipal shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    def stage_image(self, image_path: str) -> str:
        """Copy a local image into the artifact root, as a download would."""
        source = Path(image_path).expanduser()
        target = Path(self.manager.artifact_root) / f"image-{uuid4()}{source.suffix.lower()}"
        shutil.copyfile(source, target)
        return str(target)


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """aipal: chat with coding agents running in tmux sessions."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


@cli.command()
@click.argument('conversation_id')
@click.argument('text')
@click.option('--image', '-i', type=click.Path(exists=True, dir_okay=False), help='Image to attach')
@click.pass_context
def ask(ctx, conversation_id, text, image):
    """Send one message (or /command) and print the replies."""
    try:
        app = AipalApplication(config_path=ctx.obj.get('config_path'))
        asyncio.run(_ask_impl(app, conversation_id, text, image))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error sending message: {e}", err=True)
        sys.exit(1)


async def _ask_impl(app: AipalApplication, conversation_id: str, text: str, image: Optional[str]) -> None:
    app.initialize()
    sink = ConsoleReplySink()
    try:
        if image:
            task = app.manager.handle_image(conversation_id, app.stage_image(image), text, sink)
        else:
            task = app.manager.handle_text(conversation_id, text, sink)
        if task is not None:
            await task
    finally:
        await app.shutdown()


@cli.command()
@click.argument('conversation_id')
@click.pass_context
def chat(ctx, conversation_id):
    """Interactive conversation; type 'exit' to leave."""
    try:
        app = AipalApplication(config_path=ctx.obj.get('config_path'))
        asyncio.run(_chat_impl(app, conversation_id))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error in chat: {e}", err=True)
        sys.exit(1)


async def _chat_impl(app: AipalApplication, conversation_id: str) -> None:
    app.initialize()
    sink = ConsoleReplySink(prefix="< ")
    try:
        while True:
            try:
                text = await asyncio.to_thread(click.prompt, "", prompt_suffix="> ", default="", show_default=False)
            except (click.Abort, EOFError):
                break
            if text.strip().lower() in EXIT_WORDS:
                break
            task = app.manager.handle_text(conversation_id, text, sink)
            if task is not None:
                await task
    finally:
        await app.shutdown()


@cli.command()
@click.argument('conversation_id')
@click.pass_context
def reset(ctx, conversation_id):
    """Forget the thread and kill the tmux session of a conversation."""
    try:
        app = AipalApplication(config_path=ctx.obj.get('config_path'))
        asyncio.run(_reset_impl(app, conversation_id))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error resetting session: {e}", err=True)
        sys.exit(1)


async def _reset_impl(app: AipalApplication, conversation_id: str) -> None:
    app.initialize()
    try:
        await app.manager.reset(conversation_id, ConsoleReplySink())
    finally:
        await app.shutdown()


@cli.command()
@click.argument('name')
@click.argument('args', nargs=-1)
@click.pass_context
def script(ctx, name, args):
    """Run a script from the scripts directory."""
    try:
        config = initialize_config(ctx.obj.get('config_path')).get_config()
        sandbox = ScriptSandbox(
            config.scripts.directory,
            timeout_seconds=config.scripts.timeout_seconds,
            max_output_bytes=config.scripts.max_output_bytes
        )
        output = asyncio.run(sandbox.run(name, shlex.join(args)))
        click.echo(output)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except SandboxError as e:
        click.echo(f"{e.user_message} {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the aipal configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Default agent: {config.agent}")
        click.echo(f"Agent overrides: {len(config.agents)}")
        click.echo(f"Artifact root: {config.artifacts.image_dir}")
        click.echo(f"Scripts directory: {config.scripts.directory}")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")
        else:
            click.echo("\nNo warnings found.")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error validating configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def agents(ctx):
    """List the available agents."""
    try:
        config = initialize_config(ctx.obj.get('config_path')).get_config()
        registry = AgentRegistry(config.agents, default_agent=config.agent)

        click.echo(f"Found {len(registry.list_agents())} agents:")
        click.echo()
        for agent_id in registry.list_agents():
            info = registry.get(agent_id).get_agent_info()
            marker = "*" if agent_id == registry.default_agent else " "
            click.echo(f"{marker} {agent_id} ({info['kind']})")
            click.echo(f"   Label: {info['label']}")
            click.echo(f"   Command: {info['command']}")
            click.echo(f"   Output: {info['output_format']}")
            click.echo(f"   Session listing: {'yes' if info['supports_session_listing'] else 'no'}")
            click.echo()

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error listing agents: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--output', '-o', type=click.Path(), help='Output file path')
@click.pass_context
def export_config(ctx, output):
    """Export the current configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()

        config_dict = config.model_dump(mode="json", exclude={"config_file_path"})

        if output:
            with open(output, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            click.echo(f"Configuration exported to: {output}")
        else:
            click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error exporting configuration: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
