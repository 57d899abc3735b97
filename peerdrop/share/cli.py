import asyncio
import getpass
import sys
import time
from typing import List, Optional

from peerdrop.app.commands import ShareNotify, ShowRoomLink, TransferProgress

from .client import SignalingClient
from .ice import fetch_ice_servers
from .models import FileEntry, TransferStats
from .policy import AccessPolicy
from .session import HostSession, ReceiverSession
from .stats import StatsClient, http_base_url
from .transfer import DirectorySink

PROGRESS_INTERVAL = 0.2


def _format_size(size):
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def _format_eta(seconds: Optional[float]) -> str:
    if seconds is None:
        return "--"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60:02d}s"


class ProgressPrinter:
    """Single-line progress display, redrawn at most every PROGRESS_INTERVAL seconds."""

    def __init__(self, stream=None, interval: float = PROGRESS_INTERVAL, clock=time.monotonic):
        self.stream = stream or sys.stdout
        self.interval = interval
        self.clock = clock
        self._last = 0.0
        self._current = None

    def __call__(self, cmd: TransferProgress):
        key = (cmd.direction, cmd.index, cmd.name)
        finished = cmd.bytes_done >= cmd.size
        now = self.clock()
        if key == self._current and not finished and now - self._last < self.interval:
            return
        if self._current is not None and key != self._current:
            self.stream.write("\n")
        self._current = key
        self._last = now

        arrow = "↑" if cmd.direction == "send" else "↓"
        line = (
            f"\r{arrow} [{cmd.index}/{cmd.total_files}] {cmd.name}  "
            f"{cmd.percent:5.1f}%  {_format_size(cmd.bytes_done)} / {_format_size(cmd.size)}  "
            f"{_format_size(cmd.speed)}/s  ETA {_format_eta(cmd.eta)}"
        )
        self.stream.write(line)
        if finished:
            self.stream.write("\n")
            self._current = None
        self.stream.flush()


def print_notify(cmd: ShareNotify):
    if cmd.is_error:
        print(f"\033[1;31m[ERR] {cmd.message}\033[0m")
    else:
        print(f"\033[1;34m[*]\033[0m {cmd.message}")


def print_room_link(cmd: ShowRoomLink):
    limit = "unlimited" if not cmd.max_downloads else str(cmd.max_downloads)
    lines = [
        "\033[1;32m[ SHARE READY ]\033[0m",
        f"Room:      \033[1;33m{cmd.room_id}\033[0m",
        f"Broker:    {cmd.broker_url}",
        f"Password:  {'yes' if cmd.password_protected else 'no'}",
        f"Expires:   in {cmd.expiry_hours:g}h",
        f"Downloads: {limit}",
        "",
        "On the receiving device run:",
        f"  peerdrop receive {cmd.room_id} --broker {cmd.broker_url}",
        "",
    ]
    print("\n".join(lines))


def _turn_url(broker_url: str) -> str:
    return http_base_url(broker_url) + "/api/turn-credentials"


def handle_send(args, bus, config) -> int:
    """Dispatcher for 'send'."""
    entries = []
    for path in args.files:
        try:
            entries.append(FileEntry.from_path(path))
        except (ValueError, OSError) as e:
            print(f"Error preparing file: {e}")
            return 1

    broker_url = args.broker or config.get("broker_url")
    policy = AccessPolicy(
        password=args.password or None,
        expiry_hours=args.expiry_hours if args.expiry_hours is not None else config.get("expiry_hours"),
        max_downloads=args.max_downloads if args.max_downloads is not None else config.get("max_downloads"),
    )
    completed = asyncio.run(_send(bus, entries, broker_url, policy))
    total = sum(s.files for s in completed)
    print(f"Done. {len(completed)} download(s), {total} file(s) delivered.")
    return 0


async def _send(bus, entries: List[FileEntry], broker_url: str, policy: AccessPolicy) -> List[TransferStats]:
    ice_servers = await asyncio.to_thread(fetch_ice_servers, _turn_url(broker_url))
    client = SignalingClient(broker_url, on_status=lambda m: bus.handle(ShareNotify(message=m)))
    await client.connect()
    session = HostSession(
        client,
        entries,
        options=policy.to_options(),
        stats_client=StatsClient(http_base_url(broker_url)),
        bus=bus,
        ice_servers=ice_servers,
    )
    try:
        await session.start()
        bus.handle(ShowRoomLink(
            room_id=session.room_id,
            broker_url=broker_url,
            password_protected=policy.requires_password,
            expiry_hours=policy.expiry_hours,
            max_downloads=policy.max_downloads,
        ))
        return await session.serve()
    finally:
        await client.close()


def _prompt_password() -> Optional[str]:
    if not sys.stdin.isatty():
        return None
    return getpass.getpass("Room password: ").strip() or None


def handle_receive(args, bus, config) -> int:
    """Dispatcher for 'receive'."""
    broker_url = args.broker or config.get("broker_url")
    save_to = args.save_to or config.get("save_to")
    stats = asyncio.run(_receive(bus, args.room, broker_url, save_to, args.password))
    print(f"Done. {stats.files} file(s), {_format_size(stats.bytes)} saved to {save_to}")
    return 0


async def _receive(bus, room_id: str, broker_url: str, save_to: str, password: Optional[str]) -> TransferStats:
    ice_servers = await asyncio.to_thread(fetch_ice_servers, _turn_url(broker_url))
    client = SignalingClient(broker_url)
    await client.connect()
    session = ReceiverSession(
        client,
        room_id,
        DirectorySink(save_to),
        password=password,
        prompt_password=_prompt_password,
        bus=bus,
        ice_servers=ice_servers,
    )
    try:
        return await session.run()
    finally:
        await client.close()
