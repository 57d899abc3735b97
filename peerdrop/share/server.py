from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import logging
import uvicorn

from peerdrop.core.config import BrokerSettings

from .broker import Broker
from .ice import FALLBACK_ICE_SERVERS, fetch_ice_servers
from .models import TransferStats
from .registry import RoomRegistry
from .room import Connection
from .stats import StatsStore

logger = logging.getLogger(__name__)


class WebSocketConnection(Connection):
    """Broker connection backed by a FastAPI websocket and an outbound queue."""

    def __init__(self, websocket: WebSocket, peer: str = "unknown"):
        super().__init__(peer=peer)
        self.websocket = websocket
        self.outbox: asyncio.Queue = asyncio.Queue()

    def deliver(self, data):
        self.outbox.put_nowait(data)

    def terminate(self):
        super().terminate()
        self.outbox.put_nowait(None)

    async def pump(self):
        """Write queued frames to the socket until terminated."""
        while True:
            data = await self.outbox.get()
            if data is None:
                break
            try:
                await self.websocket.send_json(data)
            except (WebSocketDisconnect, RuntimeError, OSError):
                break
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass  # already closed by the peer


class SignalingServer:
    def __init__(self, settings: BrokerSettings = None, broker: Broker = None, stats: StatsStore = None):
        self.settings = settings or BrokerSettings()
        self.broker = broker or Broker(RoomRegistry(), inactivity_timeout=self.settings.inactivity_timeout)
        self.stats = stats or StatsStore()
        self.host = self.settings.host
        self.port = self.settings.port
        self._server = None

        self.app = FastAPI(title="peerdrop-broker", lifespan=self._lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        maintenance = asyncio.ensure_future(self.broker.run_maintenance(
            sweep_interval=self.settings.sweep_interval,
            liveness_interval=self.settings.liveness_interval,
        ))
        logger.info(f"Broker started on {self.host}:{self.port}")
        try:
            yield
        finally:
            maintenance.cancel()
            try:
                await maintenance
            except asyncio.CancelledError:
                pass

    def _setup_routes(self):
        @self.app.get("/health")
        async def health():
            return {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "rooms": len(self.broker.registry),
            }

        @self.app.get("/api/turn-credentials")
        def turn_credentials():
            if self.settings.ice_servers:
                return self.settings.ice_servers
            if self.settings.ice_servers_url:
                return fetch_ice_servers(self.settings.ice_servers_url)
            return FALLBACK_ICE_SERVERS

        @self.app.get("/api/stats")
        async def get_stats():
            return self.stats.snapshot().to_dict()

        @self.app.post("/api/stats")
        async def post_stats(request: Request):
            try:
                data = await request.json()
            except ValueError:
                raise HTTPException(status_code=422, detail="Body must be JSON")
            record = self._parse_stats(data)
            return self.stats.record(record).to_dict()

        @self.app.websocket("/ws")
        async def signaling(websocket: WebSocket):
            await websocket.accept()
            client = websocket.client
            peer = f"{client.host}:{client.port}" if client else "unknown"
            conn = WebSocketConnection(websocket, peer=peer)
            self.broker.register(conn)
            writer = asyncio.ensure_future(conn.pump())
            try:
                while True:
                    event = await websocket.receive()
                    if event["type"] == "websocket.disconnect":
                        break
                    text = event.get("text")
                    if text is None:
                        conn.update_heartbeat()
                        logger.warning(f"Ignoring binary frame from {conn}")
                        continue
                    self.broker.handle(conn, text)
            except WebSocketDisconnect:
                pass
            finally:
                self.broker.disconnect(conn)
                conn.terminate()
                await writer
                logger.info(f"Connection closed: {conn}")

    @staticmethod
    def _parse_stats(data) -> TransferStats:
        if not isinstance(data, dict):
            raise HTTPException(status_code=422, detail="Body must be an object")
        files, nbytes, duration = data.get("files"), data.get("bytes"), data.get("duration")
        for name, value in (("files", files), ("bytes", nbytes)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise HTTPException(status_code=422, detail=f"'{name}' must be a non-negative integer")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            raise HTTPException(status_code=422, detail="'duration' must be a non-negative number")
        return TransferStats(files=files, bytes=nbytes, duration=float(duration))

    def run_server(self):
        """Run the server (blocking)."""
        # Keep the console quiet; INFO goes to the log file
        uvicorn_logger = logging.getLogger("uvicorn")
        uvicorn_logger.setLevel(logging.ERROR)

        fh = logging.FileHandler(self.settings.log_file)
        fh.setLevel(logging.INFO)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root = logging.getLogger()
        root.setLevel(logging.INFO)
        root.addHandler(fh)

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="error", ws_ping_interval=None)
        self._server = uvicorn.Server(config)
        self._server.run()

    def stop(self):
        """Stop the server."""
        if self._server:
            self._server.should_exit = True
