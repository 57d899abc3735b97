"""
Chunked file transfer over an ordered, reliable data channel.

Per file the sender emits ``file-info``, the file's bytes as raw binary
frames of ``CHUNK_SIZE``, then ``file-complete``; ``all-complete`` ends the
batch. Frames carry no sequence numbers: their meaning is positional, which
is only sound because the channel preserves order and never drops data.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

from peerdrop.core.interfaces import ChannelAdapter, FileSink

from .errors import LocalIOError, ProtocolError, ShareError
from .messages import AllComplete, FileComplete, FileInfo, parse_control
from .models import FileEntry, TransferSession, TransferStats

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
HIGH_WATER_CHUNKS = 16
POLL_INTERVAL = 0.01

ProgressCallback = Callable[[TransferSession], None]


class FileSender:
    """
    Streams files over a channel with bounded buffering.

    Before each chunk the sender waits until the channel's buffered amount
    plus the chunk fits under ``high_water_mark``. Waiting is driven by the
    channel's drain notification, rechecked every ``poll_interval`` seconds in
    case the notification never fires. A lower mark trades throughput for
    memory; the default (16 chunks, about 1 MiB) keeps a typical link busy.
    """

    def __init__(self, channel: ChannelAdapter, chunk_size: int = CHUNK_SIZE,
                 high_water_mark: Optional[int] = None, poll_interval: float = POLL_INTERVAL,
                 on_progress: Optional[ProgressCallback] = None,
                 clock: Callable[[], float] = time.monotonic):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.high_water_mark = high_water_mark or chunk_size * HIGH_WATER_CHUNKS
        self.poll_interval = poll_interval
        self.on_progress = on_progress
        self.clock = clock
        self.session: Optional[TransferSession] = None

    async def send_batch(self, entries: List[FileEntry]) -> TransferStats:
        """Send every file in order, then ``all-complete``."""
        stats = TransferStats()
        started = self.clock()
        total = len(entries)
        for index, entry in enumerate(entries, start=1):
            stats.bytes += await self.send_file(entry, index, total)
            stats.files += 1
        await self._send_control(AllComplete())
        stats.duration = self.clock() - started
        logger.info(f"Batch sent: {stats.files} files, {stats.bytes} bytes in {stats.duration:.2f}s")
        return stats

    async def send_file(self, entry: FileEntry, index: int = 1, total: int = 1) -> int:
        """Send one file; returns the bytes actually sent."""
        session = TransferSession(
            name=entry.name,
            size=entry.size_bytes,
            mime_type=entry.mime_type,
            index=index,
            total_files=total,
            started_at=self.clock(),
        )
        self.session = session
        await self._send_control(FileInfo(
            name=entry.name,
            size=entry.size_bytes,
            mime_type=entry.mime_type,
            current_index=index,
            total_files=total,
        ))

        try:
            with open(entry.absolute_path, "rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, self.chunk_size)
                    if not chunk:
                        break
                    await self._wait_for_room(len(chunk))
                    self.channel.send(chunk)
                    session.offset += len(chunk)
                    session.record(len(chunk))
                    if self.on_progress:
                        self.on_progress(session)
        except OSError as e:
            raise LocalIOError(entry.absolute_path, e) from e
        finally:
            self.session = None

        await self._send_control(FileComplete())
        return session.bytes_moved

    async def _send_control(self, message):
        frame = message.to_json()
        await self._wait_for_room(len(frame.encode()))
        self.channel.send(frame)

    async def _wait_for_room(self, size: int):
        while True:
            buffered = self.channel.buffered_amount
            # an empty buffer always accepts one chunk, whatever the mark
            if buffered == 0 or buffered + size <= self.high_water_mark:
                return
            await self.channel.wait_for_drain(self.poll_interval)


class FileReceiver:
    """Reassembles files from the frame stream and hands them to a sink."""

    def __init__(self, sink: FileSink,
                 on_progress: Optional[ProgressCallback] = None,
                 on_file: Optional[Callable[[Path, TransferSession], None]] = None,
                 on_complete: Optional[Callable[[TransferStats], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.sink = sink
        self.on_progress = on_progress
        self.on_file = on_file
        self.on_complete = on_complete
        self.clock = clock
        self.session: Optional[TransferSession] = None
        self.saved: List[Path] = []
        self.stats = TransferStats()
        self.finished = False
        self.failure: Optional[ShareError] = None
        self._batch_started: Optional[float] = None

    def handle_message(self, message: Union[str, bytes]) -> None:
        """Feed one data channel frame. Bad frames are logged and dropped."""
        try:
            if isinstance(message, (bytes, bytearray, memoryview)):
                self._on_chunk(bytes(message))
            else:
                self._on_control(parse_control(message))
        except ProtocolError as e:
            logger.warning(f"Dropping data channel frame: {e}")
        except ShareError as e:
            logger.error(str(e))
            self.failure = e

    def _on_control(self, msg):
        if isinstance(msg, FileInfo):
            if self.session is not None:
                logger.warning(f"Discarding incomplete file {self.session.name}")
            now = self.clock()
            if self._batch_started is None:
                self._batch_started = now
            self.session = TransferSession(
                name=msg.name,
                size=msg.size,
                mime_type=msg.mime_type,
                index=msg.current_index,
                total_files=msg.total_files,
                started_at=now,
            )
        elif isinstance(msg, FileComplete):
            self._finish_file()
        elif isinstance(msg, AllComplete):
            self.finished = True
            if self._batch_started is not None:
                self.stats.duration = self.clock() - self._batch_started
            logger.info(f"All files received: {self.stats.files} files, {self.stats.bytes} bytes")
            if self.on_complete:
                self.on_complete(self.stats)

    def _on_chunk(self, data: bytes):
        session = self.session
        if session is None:
            raise ProtocolError("Binary frame outside a file")
        session.chunks.append(data)
        session.record(len(data))
        if self.on_progress:
            self.on_progress(session)

    def _finish_file(self):
        session = self.session
        if session is None:
            raise ProtocolError("file-complete without file-info")
        self.session = None
        payload = session.assemble()
        session.chunks.clear()
        if len(payload) != session.size:
            logger.warning(f"{session.name}: expected {session.size} bytes, got {len(payload)}")
        try:
            path = self.sink.save(session.name, session.mime_type, payload)
        except OSError as e:
            raise LocalIOError(session.name, e) from e
        self.saved.append(path)
        self.stats.files += 1
        self.stats.bytes += len(payload)
        logger.info(f"Saved {session.name} ({len(payload)} bytes) to {path}")
        if self.on_file:
            self.on_file(path, session)


def safe_filename(name: str) -> str:
    """Strip any directory parts a peer may have put in a file name."""
    base = name.replace("\\", "/").split("/")[-1].strip()
    if base in ("", ".", ".."):
        return "download"
    return base


class DirectorySink(FileSink):
    """Writes received files into a directory without overwriting."""

    def __init__(self, directory):
        self.directory = Path(directory).expanduser()

    def save(self, name: str, mime_type: str, payload: bytes) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._unique_path(safe_filename(name))
        target.write_bytes(payload)
        return target

    def _unique_path(self, name: str) -> Path:
        target = self.directory / name
        if not target.exists():
            return target
        stem, suffix = Path(name).stem, Path(name).suffix
        n = 1
        while True:
            candidate = self.directory / f"{stem} ({n}){suffix}"
            if not candidate.exists():
                return candidate
            n += 1
