from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import mimetypes
import time

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class FileEntry:
    name: str
    size_bytes: int
    absolute_path: str
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_path(cls, path: str) -> 'FileEntry':
        p = Path(path).expanduser().resolve()
        if not p.is_file():
            raise ValueError(f"Path is not a file: {path}")

        mime_type, _ = mimetypes.guess_type(p.name)
        return cls(
            name=p.name,
            size_bytes=p.stat().st_size,
            absolute_path=str(p),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )


@dataclass
class TransferSession:
    """Progress state for the file currently moving over the channel."""
    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE
    index: int = 1
    total_files: int = 1
    chunks: List[bytes] = field(default_factory=list)  # receiver side
    offset: int = 0  # sender side
    bytes_moved: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record(self, nbytes: int):
        self.bytes_moved += nbytes

    @property
    def progress(self) -> float:
        """Percent complete, 0-100."""
        if self.size <= 0:
            return 100.0
        return min(self.bytes_moved / self.size * 100, 100.0)

    def speed(self, now: Optional[float] = None) -> float:
        """Average bytes per second since file-info."""
        elapsed = (now if now is not None else time.monotonic()) - self.started_at
        if elapsed <= 0:
            return 0.0
        return self.bytes_moved / elapsed

    def eta(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds remaining at the current average speed."""
        speed = self.speed(now)
        if speed <= 0:
            return None
        return max(0, self.size - self.bytes_moved) / speed

    def assemble(self) -> bytes:
        return b"".join(self.chunks)


@dataclass
class TransferStats:
    files: int = 0
    bytes: int = 0
    duration: float = 0.0

    def to_record(self) -> dict:
        return {"files": self.files, "bytes": self.bytes, "duration": round(self.duration, 3)}
