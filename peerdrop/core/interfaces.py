from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union


class ChannelAdapter(ABC):
    """Ordered, reliable message channel between two peers."""

    @abstractmethod
    def send(self, data: Union[str, bytes]) -> None:
        """Queue a text (control) or binary (chunk) frame."""
        pass

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued on the channel but not yet handed to the network."""
        pass

    @abstractmethod
    async def wait_for_drain(self, timeout: float) -> None:
        """Return once the buffer drained below the low-water mark, or after timeout."""
        pass


class FileSink(ABC):
    @abstractmethod
    def save(self, name: str, mime_type: str, payload: bytes) -> Path:
        """Persist a fully received file and return where it went."""
        pass
