import logging
import threading
from dataclasses import dataclass
from typing import Optional

import requests

from .models import TransferStats

logger = logging.getLogger(__name__)


@dataclass
class StatsTotals:
    transfers: int = 0
    files: int = 0
    bytes: int = 0
    seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "transfers": self.transfers,
            "files": self.files,
            "bytes": self.bytes,
            "seconds": round(self.seconds, 3),
        }


class StatsStore:
    """In-memory running totals of completed transfers, kept by the broker process."""

    def __init__(self):
        self._totals = StatsTotals()
        self._lock = threading.Lock()

    def record(self, stats: TransferStats) -> StatsTotals:
        with self._lock:
            self._totals.transfers += 1
            self._totals.files += stats.files
            self._totals.bytes += stats.bytes
            self._totals.seconds += stats.duration
            return self.snapshot()

    def snapshot(self) -> StatsTotals:
        t = self._totals
        return StatsTotals(t.transfers, t.files, t.bytes, t.seconds)


class StatsClient:
    """Posts transfer records to the broker. Failures are logged, never raised."""

    def __init__(self, base_url: str, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch(self) -> Optional[dict]:
        try:
            resp = requests.get(f"{self.base_url}/api/stats", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Failed to fetch stats: {e}")
            return None

    def post(self, stats: TransferStats) -> bool:
        try:
            resp = requests.post(f"{self.base_url}/api/stats", json=stats.to_record(), timeout=self.timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to record transfer stats: {e}")
            return False
        return True


def http_base_url(broker_url: str) -> str:
    """ws://host:port/ws -> http://host:port"""
    url = broker_url.rstrip("/")
    if url.endswith("/ws"):
        url = url[:-3]
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url
