import os
import json
import base64
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_BROKER_URL = "ws://localhost:3000/ws"

# Client preferences stored by SecureConfigRepository, with their defaults
CLIENT_DEFAULTS: Dict[str, Any] = {
    "broker_url": DEFAULT_BROKER_URL,
    "save_to": str(Path.home() / "Downloads"),
    "max_downloads": 1,
    "expiry_hours": 24.0,
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _env_ice_servers(name: str) -> Optional[List[Dict[str, Any]]]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        servers = json.loads(raw)
    except ValueError:
        raise ValueError(f"{name} must be a JSON list of ICE servers") from None
    if not isinstance(servers, list) or not all(isinstance(s, dict) and s.get("urls") for s in servers):
        raise ValueError(f"{name} must be a JSON list of objects with 'urls'")
    return servers


@dataclass
class BrokerSettings:
    """Broker process settings, read from the environment (and .env)."""
    host: str = "0.0.0.0"
    port: int = 3000
    ice_servers: Optional[List[Dict[str, Any]]] = None
    ice_servers_url: Optional[str] = None
    inactivity_timeout: float = 1800
    sweep_interval: float = 300
    liveness_interval: float = 30
    log_file: str = "peerdrop_broker.log"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "BrokerSettings":
        load_dotenv(dotenv_path)
        origins = os.environ.get("PEERDROP_CORS_ORIGINS", "*")
        return cls(
            host=os.environ.get("PEERDROP_HOST", "0.0.0.0"),
            port=_env_int("PEERDROP_PORT", 3000),
            ice_servers=_env_ice_servers("PEERDROP_ICE_SERVERS"),
            ice_servers_url=os.environ.get("PEERDROP_ICE_SERVERS_URL") or None,
            inactivity_timeout=_env_float("PEERDROP_INACTIVITY_TIMEOUT", 1800),
            sweep_interval=_env_float("PEERDROP_SWEEP_INTERVAL", 300),
            liveness_interval=_env_float("PEERDROP_LIVENESS_INTERVAL", 30),
            log_file=os.environ.get("PEERDROP_LOG_FILE", "peerdrop_broker.log"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


class SecureConfigRepository:
    """
    Manages encrypted client preferences.
    Saves to 'config.enc' under the given directory.
    """
    def __init__(self, config_dir: Path):
        config_dir = Path(config_dir)
        config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path = config_dir / "config.enc"
        self._fernet = Fernet(self._derive_key())
        self._cache: Dict[str, Any] = {}
        self._load()

    def _derive_key(self) -> bytes:
        """
        Derive a consistent key from the machine's node id.
        """
        machine_id = str(uuid.getnode())

        # Salt must be consistent for the file to be readable across restarts
        salt = b'peerdrop_secure_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(machine_id.encode()))

    def _load(self):
        if not self.config_path.exists():
            self._cache = {}
            return

        try:
            data = self.config_path.read_bytes()
            self._cache = json.loads(self._fernet.decrypt(data).decode())
        except (OSError, InvalidToken, ValueError) as e:
            # Unreadable (other machine, tampering, corruption): start fresh
            logger.warning(f"Ignoring unreadable config {self.config_path}: {e}")
            self._cache = {}

    def save(self):
        data = self._fernet.encrypt(json.dumps(self._cache).encode())
        self.config_path.write_bytes(data)

    def get(self, key: str, default=None):
        if default is None:
            default = CLIENT_DEFAULTS.get(key)
        return self._cache.get(key, default)

    def set(self, key: str, value):
        if key not in CLIENT_DEFAULTS:
            raise KeyError(f"Unknown config key: {key}")
        default = CLIENT_DEFAULTS[key]
        if isinstance(default, float):
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a number") from None
        elif isinstance(default, int) and not isinstance(value, int):
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be an integer") from None
        self._cache[key] = value
        self.save()

    def items(self) -> Dict[str, Any]:
        return {key: self.get(key) for key in CLIENT_DEFAULTS}
