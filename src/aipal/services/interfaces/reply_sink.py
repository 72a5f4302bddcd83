"""Abstract interface for the chat transport's outbound side."""

from abc import ABC, abstractmethod


class IReplySink(ABC):
    """Where replies for one inbound event are delivered."""

    @abstractmethod
    async def reply(self, text: str) -> None:
        """Send a text message."""
        pass

    @abstractmethod
    async def reply_photo(self, path: str) -> None:
        """Send an image file that has already passed containment checks."""
        pass

    async def typing(self) -> None:
        """Signal that a reply is being prepared; optional."""
        return None
