from dataclasses import dataclass
from typing import Protocol, Type, Dict, Any, TypeVar, Optional

# --- Commands ---
@dataclass
class Command:
    pass

@dataclass
class ShareNotify(Command):
    message: str
    is_error: bool = False

@dataclass
class ShowRoomLink(Command):
    room_id: str
    broker_url: str
    password_protected: bool = False
    expiry_hours: float = 24
    max_downloads: int = 0

@dataclass
class TransferProgress(Command):
    direction: str  # send, receive
    name: str
    index: int
    total_files: int
    bytes_done: int
    size: int
    percent: float = 0.0
    speed: float = 0.0  # bytes per second
    eta: Optional[float] = None


# --- Bus ---
C = TypeVar("C", bound=Command)

class CommandHandler(Protocol[C]):
    def __call__(self, command: C) -> Any:
        ...

class CommandBus:
    def __init__(self):
        self._handlers: Dict[Type[Command], CommandHandler] = {}

    def register(self, command_type: Type[C], handler: CommandHandler[C]):
        self._handlers[command_type] = handler

    def handle(self, command: Command) -> Any:
        handler = self._handlers.get(type(command))
        if not handler:
            raise ValueError(f"No handler registered for {type(command)}")
        return handler(command)
