import os
from pathlib import Path

from peerdrop.app.commands import CommandBus, ShareNotify, ShowRoomLink, TransferProgress
from peerdrop.core.config import BrokerSettings, SecureConfigRepository


def get_config_dir() -> Path:
    """Where client preferences live (PEERDROP_HOME, default ~/.peerdrop)."""
    return Path(os.environ.get("PEERDROP_HOME", Path.home() / ".peerdrop")).expanduser()


def create_container() -> dict:
    # 1. Config
    config_repo = SecureConfigRepository(get_config_dir())
    settings = BrokerSettings.from_env()

    # 2. Console handlers
    from peerdrop.share.cli import ProgressPrinter, print_notify, print_room_link

    # 3. Bus
    bus = CommandBus()
    bus.register(ShareNotify, print_notify)
    bus.register(ShowRoomLink, print_room_link)
    bus.register(TransferProgress, ProgressPrinter())

    return {
        "bus": bus,
        "config": config_repo,
        "settings": settings,
    }
