"""
Shared fixtures.

- A throwaway SQLite file per test, patched in as the process engine
- FakeSocketServer: in-memory stand-in for socketio.AsyncServer that records
  what every session received
- LoopbackSocketClient: stand-in for socketio.AsyncClient wired to the fake
  server, so the real SubscriptionChannel runs without a network
- In-memory HTTP via httpx.AsyncClient + ASGITransport (no uvicorn)
"""
import asyncio
import uuid
from collections import defaultdict
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
import socketio
from fastapi.testclient import TestClient

import core.db as db
from app import create_app
from common.events import EQUIPMENT_UPDATE
from core.db import create_db_engine, initialize_database
from core.security import create_access_token
from core.websocket import Broadcaster, register_handlers
from modules.users.repo import UsersRepo
from sync_client.channel import SubscriptionChannel
from sync_client.config import ClientSettings
from sync_client.gateway import GatewayClient
from sync_client.session import SyncSession

NAMESPACE = "/equipment"


# ---------------------------
# Database
# ---------------------------
@pytest.fixture(autouse=True)
def engine(tmp_path, monkeypatch):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'equipment.db'}")
    initialize_database(eng)
    monkeypatch.setattr(db, "_engine", eng)
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine):
    """alice and bob share the 'crew' team; carol is on 'other'."""
    repo = UsersRepo(engine)
    out = {}
    for name, phone, team in (
        ("alice", "07700900001", "crew"),
        ("bob", "07700900002", "crew"),
        ("carol", "07700900003", "other"),
    ):
        row = repo.create_user(name=name.title(), phone=phone, team_id=team)
        out[name] = SimpleNamespace(
            id=row["id"], name=row["name"], team_id=team, phone=phone,
            token=create_access_token(sub=row["id"]),
        )
    return out


def actor_of(user):
    return {"id": user.id, "name": user.name, "team_id": user.team_id}


def bearer(user):
    return {"Authorization": f"Bearer {user.token}"}


# ---------------------------
# Socket.IO stand-ins
# ---------------------------
class FakeSocketServer:
    """Rooms, handlers and per-sid delivery log; emits reach attached loopback clients."""

    def __init__(self):
        self.handlers = {}
        self.rooms = defaultdict(set)
        self.delivered = defaultdict(list)
        self.connected = set()
        self.clients = {}
        self.fail_emits = False
        self.manager = SimpleNamespace(is_connected=lambda sid, namespace=None: sid in self.connected)

    def on(self, event, handler=None, namespace=None):
        def set_handler(h):
            self.handlers[(namespace or "/", event)] = h
            return h
        if handler is None:
            return set_handler
        set_handler(handler)

    async def enter_room(self, sid, room, namespace=None):
        self.rooms[room].add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms[room].discard(sid)

    async def emit(self, event, data=None, to=None, room=None, namespace=None, **kwargs):
        if self.fail_emits:
            raise ConnectionError("message queue unavailable")
        sids = [to] if to is not None else sorted(self.rooms.get(room, ()))
        for sid in sids:
            self.delivered[sid].append((event, data))
            client = self.clients.get(sid)
            if client is not None:
                await client.deliver(event, data)

    # test drivers
    async def connect(self, sid, token, namespace=NAMESPACE):
        await self.handlers[(namespace, "connect")](sid, {}, {"token": token} if token else None)
        self.connected.add(sid)

    async def join(self, sid, data=None, namespace=NAMESPACE):
        return await self.handlers[(namespace, "join-team")](sid, data)

    async def disconnect(self, sid, namespace=NAMESPACE):
        self.connected.discard(sid)
        self.clients.pop(sid, None)
        await self.handlers[(namespace, "disconnect")](sid)

    def events_for(self, sid, name=EQUIPMENT_UPDATE):
        return [data for event, data in self.delivered[sid] if event == name]


class LoopbackSocketClient:
    """Quacks like socketio.AsyncClient for SubscriptionChannel, talking to a FakeSocketServer."""

    def __init__(self, server: FakeSocketServer):
        self.server = server
        self.handlers = {}
        self.sid = None
        self.auth = None
        self.namespace = NAMESPACE
        self.refuse = False

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler

    async def connect(self, url, auth=None, namespaces=None, socketio_path=None, wait_timeout=None, **kwargs):
        self.auth = auth
        if self.refuse:
            # python-socketio reports the failure to connect_error, then raises
            await self.handlers["connect_error"]("Connection refused by the server")
            raise socketio.exceptions.ConnectionError("Connection refused by the server")
        sid = uuid.uuid4().hex
        try:
            await self.server.connect(sid, (auth or {}).get("token"), namespace=self.namespace)
        except socketio.exceptions.ConnectionRefusedError as e:
            await self.handlers["connect_error"]({"message": str(e)})
            raise socketio.exceptions.ConnectionError(str(e))
        self.sid = sid
        self.server.clients[sid] = self
        await self.handlers["connect"]()

    async def emit(self, event, data=None, namespace=None, callback=None):
        return await self.server.handlers[(self.namespace, event)](self.sid, data)

    async def deliver(self, event, data):
        handler = self.handlers.get(event)
        if handler is not None:
            await handler(data)

    async def drop(self):
        """Transport loss: the server forgets the session, the client notices."""
        sid, self.sid = self.sid, None
        if sid is not None:
            await self.server.disconnect(sid, namespace=self.namespace)
        await self.handlers["disconnect"]("transport close")

    async def reconnect(self):
        await self.connect(None, auth=self.auth)

    async def disconnect(self):
        if self.sid is not None:
            sid, self.sid = self.sid, None
            await self.server.disconnect(sid, namespace=self.namespace)


@pytest.fixture
def fake_server():
    return FakeSocketServer()


@pytest.fixture
def broadcaster(fake_server):
    b = Broadcaster(fake_server, namespace=NAMESPACE)
    register_handlers(fake_server, b)
    return b


@pytest.fixture
def app(broadcaster):
    return create_app(broadcaster, run_background=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest_asyncio.fixture
async def http(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------
# Two-client harness
# ---------------------------
class SerializedASGITransport(httpx.AsyncBaseTransport):
    """One request at a time against the app; SQLite allows a single writer."""

    def __init__(self, app):
        self._inner = httpx.ASGITransport(app=app)
        self._lock = asyncio.Lock()

    async def handle_async_request(self, request):
        async with self._lock:
            return await self._inner.handle_async_request(request)


TEST_CLIENT_SETTINGS = ClientSettings(
    BASE_URL="http://test",
    RECONNECT_DELAY=0.01,
    RECONNECT_DELAY_MAX=0.02,
    POLL_EQUIPMENT_HEALTHY=60, POLL_EQUIPMENT_DEGRADED=30,
    POLL_STATS_HEALTHY=60, POLL_STATS_DEGRADED=30,
    POLL_DELETED_HEALTHY=60, POLL_DELETED_DEGRADED=30,
)


@pytest_asyncio.fixture
async def make_session(app, fake_server):
    transport = SerializedASGITransport(app)
    sessions = []

    async def make(user, start=True):
        gateway = GatewayClient("http://test", user.token, settings=TEST_CLIENT_SETTINGS, transport=transport)
        socket = LoopbackSocketClient(fake_server)
        channel = SubscriptionChannel(user.token, user.team_id, settings=TEST_CLIENT_SETTINGS, client=socket)
        session = SyncSession(gateway, channel, actor_id=user.id, team_id=user.team_id, settings=TEST_CLIENT_SETTINGS)
        session.socket = socket
        sessions.append(session)
        if start:
            await session.start()
            await wait_until(lambda: session.view.connectivity == "healthy")
        return session

    yield make
    for s in sessions:
        await s.close()


async def wait_until(predicate, timeout=3.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
