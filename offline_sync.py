# offline_sync.py
# =============================================================================
# Offline write buffering for FitTrack clients.
#
# Writes attempted while the API is unreachable are queued as SyncItems,
# mirrored to a JSON file, and replayed in insertion order once a
# ConnectivitySource reports the API reachable again. Delivery is
# at-least-once: a write that lands on the server but whose response is lost
# stays queued and is sent again on the next replay.
# =============================================================================

from __future__ import annotations

import enum
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

DEFAULT_QUEUE_PATH = Path.home() / ".fittrack" / "sync_queue.json"

ConnectivityListener = Callable[[bool], Awaitable[None]]


class SyncItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    endpoint: str
    method: str
    payload: Any = None
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))  # epoch ms
    attempts: int = 0


class ConnectivityState(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


# -----------------------------------------------------------------------------
# Durable mirror
# -----------------------------------------------------------------------------
class JsonFileQueueStorage:
    """Keeps the whole queue as one JSON array on disk."""

    def __init__(self, path: Optional[os.PathLike] = None) -> None:
        self.path = Path(path or os.getenv("FITTRACK_SYNC_QUEUE") or DEFAULT_QUEUE_PATH)

    def load(self) -> List[SyncItem]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
            return [SyncItem.model_validate(r) for r in raw]
        except (OSError, ValueError) as e:
            log.warning(f"Ignoring unreadable sync queue {self.path}: {e}")
            return []

    def save(self, items: List[SyncItem]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps([i.model_dump() for i in items], default=str)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(self.path)


# -----------------------------------------------------------------------------
# Replay transport
# -----------------------------------------------------------------------------
class HttpReplayer:
    """Sends a buffered write to the API. Raises on transport error or non-2xx."""

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def __call__(self, item: SyncItem) -> None:
        async with httpx.AsyncClient(
            base_url=self.base_url, transport=self.transport, timeout=self.timeout
        ) as client:
            resp = await client.request(item.method, item.endpoint, json=item.payload)
            resp.raise_for_status()


Replayer = Callable[[SyncItem], Awaitable[None]]


# -----------------------------------------------------------------------------
# Connectivity sources
# -----------------------------------------------------------------------------
class ConnectivitySource(Protocol):
    def is_online(self) -> bool: ...

    def add_listener(self, listener: ConnectivityListener) -> None: ...


class ManualConnectivity:
    """Connectivity driven by explicit set_online() calls."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        for listener in list(self._listeners):
            await listener(online)


class HealthCheckMonitor(ManualConnectivity):
    """Treats the API as reachable while GET /health answers with a 2xx."""

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 5.0,
        online: bool = False,
    ) -> None:
        super().__init__(online=online)
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def probe(self) -> bool:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, transport=self.transport, timeout=self.timeout
            ) as client:
                resp = await client.get("/health")
            return resp.is_success
        except httpx.HTTPError as e:
            log.info(f"API unreachable at {self.base_url}: {e}")
            return False

    async def poll_once(self) -> bool:
        online = await self.probe()
        await self.set_online(online)
        return online


# -----------------------------------------------------------------------------
# Queue
# -----------------------------------------------------------------------------
class OfflineSyncQueue:
    """Buffers writes while offline and replays them when connectivity returns.

    ``max_attempts`` of None keeps retrying a failing item forever; a number
    drops the item after that many failed replays.
    """

    def __init__(
        self,
        storage: JsonFileQueueStorage,
        replayer: Replayer,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.storage = storage
        self.replayer = replayer
        self.max_attempts = max_attempts
        self.state = ConnectivityState.OFFLINE
        self._items: List[SyncItem] = storage.load()
        self._replaying = False

    def __len__(self) -> int:
        return len(self._items)

    def pending(self) -> List[SyncItem]:
        return [i.model_copy() for i in self._items]

    def enqueue(self, endpoint: str, method: str, payload: Any = None) -> str:
        item = SyncItem(endpoint=endpoint, method=method.upper(), payload=payload)
        self._items.append(item)
        self._persist()
        log.info(f"Queued {item.method} {item.endpoint} as {item.id}")
        return item.id

    async def observe_connectivity(self, source: ConnectivitySource) -> None:
        self.state = ConnectivityState.ONLINE if source.is_online() else ConnectivityState.OFFLINE
        source.add_listener(self._on_connectivity_change)
        if self.state is ConnectivityState.ONLINE and self._items:
            await self.replay()

    async def _on_connectivity_change(self, online: bool) -> None:
        previous = self.state
        self.state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        if previous is not self.state:
            log.info(f"Connectivity: {previous.value} -> {self.state.value}")
        if previous is ConnectivityState.OFFLINE and online and self._items:
            await self.replay()

    async def replay(self) -> int:
        """Send every queued item once, oldest first. Returns how many landed."""
        if self._replaying:
            return 0
        self._replaying = True
        sent = 0
        try:
            for item in list(self._items):
                try:
                    await self.replayer(item)
                except Exception as e:
                    self._record_failure(item, e)
                    continue
                self._items = [i for i in self._items if i.id != item.id]
                sent += 1
        finally:
            self._replaying = False
            self._persist()
        return sent

    def _record_failure(self, item: SyncItem, error: Exception) -> None:
        item.attempts += 1
        log.warning(
            f"Sync failed for {item.id} ({item.method} {item.endpoint}), "
            f"attempt {item.attempts}: {error}"
        )
        if self.max_attempts is not None and item.attempts >= self.max_attempts:
            log.error(f"Dropping {item.id} after {item.attempts} failed attempts")
            self._items = [i for i in self._items if i.id != item.id]

    def _persist(self) -> None:
        try:
            self.storage.save(self._items)
        except (OSError, TypeError, ValueError) as e:
            log.error(f"Could not persist sync queue to {self.storage.path}: {e}")
