"""Reply sink that prints to the terminal."""

import click

from aipal.services.interfaces import IReplySink


class ConsoleReplySink(IReplySink):
    """Echoes replies to stdout; photos are shown as their paths."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.replies = []

    async def reply(self, text: str) -> None:
        self.replies.append(text)
        click.echo(f"{self.prefix}{text}")

    async def reply_photo(self, path: str) -> None:
        self.replies.append(path)
        click.echo(f"{self.prefix}[image] {path}")
