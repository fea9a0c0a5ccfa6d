from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, ValidationError
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from cipherline.core import crypto, proto
from cipherline.core.auth import AuthError, Authenticator, bearer_token
from cipherline.core.bus import BusSubscription, Delivery, RelayBus, route
from cipherline.core.directory import KeyDirectory, MessageRoutes
from cipherline.core.presence import PresenceRegistry
from cipherline.core.queue import JobQueue
from cipherline.utils import codec

from .config import Settings, parse_listen

log = logging.getLogger("cipherline.server.runtime")


def request_token(authorization: Optional[str], path: str) -> Optional[str]:
    """Bearer token from the Authorization header, else the ?token= query parameter."""
    token = bearer_token(authorization)
    if token:
        return token
    values = parse_qs(urlsplit(path).query).get("token")
    return values[0] if values else None


@dataclass(slots=True)
class Connection:
    websocket: Any
    ref: str
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = codec.dumps(frame).decode("utf-8")
        async with self.send_lock:
            await self.websocket.send(text)


class SessionState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


Handler = Callable[[Any], Awaitable[None]]


class Session:
    """One authenticated connection.

    Inbound frames are handled one at a time, each by exactly one handler:

      registerPublicKey  -> directory write
      sendMessage        -> route claim, bus publish + storeMessage job, messageAccepted reply
      messageDelivered   -> updateStatus job, bus publish if from the receiver
      messageRead        -> updateStatus job, bus publish if from the receiver
      requestPublicKey   -> directory read, publicKey reply

    Nothing is handled once the session is CLOSED.
    """

    def __init__(self, runtime: "ServerRuntime", user_id: str, connection: Connection) -> None:
        self.runtime = runtime
        self.user_id = user_id
        self.connection = connection
        self.state = SessionState.OPEN
        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "registerPublicKey": (proto.RegisterPublicKey, self._on_register_public_key),
            "sendMessage": (proto.SendMessage, self._on_send_message),
            "messageDelivered": (proto.Receipt, self._on_delivered),
            "messageRead": (proto.Receipt, self._on_read),
            "requestPublicKey": (proto.RequestPublicKey, self._on_request_public_key),
        }

    # ------------------------------------------------------------------
    # Frame ingress
    # ------------------------------------------------------------------

    async def dispatch(self, raw: str | bytes) -> None:
        if self.state is not SessionState.OPEN:
            return
        try:
            frame = proto.Frame.model_validate(codec.loads(raw))
        except (ValueError, ValidationError):
            await self.send_error("BAD_FRAME", "invalid frame")
            return

        entry = self._handlers.get(frame.event)
        if entry is None:
            await self.send_error("UNKNOWN_EVENT", f"unsupported event {frame.event}")
            return
        model, handler = entry
        try:
            body = model.model_validate(frame.data)
        except ValidationError:
            await self.send_error("BAD_FRAME", f"invalid {frame.event} payload")
            return

        try:
            await handler(body)
        except Exception:
            log.exception("%s from %s failed", frame.event, self.user_id)
            await self.send_error("UNAVAILABLE", f"{frame.event} could not be processed")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_register_public_key(self, body: proto.RegisterPublicKey) -> None:
        if body.user_id != self.user_id:
            await self.send_error("FORBIDDEN", "cannot register a key for another user")
            return
        if not crypto.accept_public_key(body.public_key):
            await self.send_error("BAD_KEY", "public key rejected")
            return
        await self.runtime.directory.publish(self.user_id, body.public_key)

    async def _on_send_message(self, body: proto.SendMessage) -> None:
        if body.sender != self.user_id:
            await self.send_error("FORBIDDEN", "sender does not match the authenticated user")
            return
        message = proto.Message(
            message_id=body.message_id or proto.new_message_id(),
            sender=body.sender,
            receiver=body.receiver,
            envelope=body.envelope(),
        )
        if not await self.runtime.routes.claim(message.message_id, message.sender, message.receiver):
            await self.send_error("FORBIDDEN", "messageId is already in use")
            return
        await self.runtime.publish(proto.MessagePublication.of(message))
        await self.runtime.queue.enqueue(proto.StoreMessageJob(message=message))
        await self.send("messageAccepted", {"messageId": message.message_id, "createdAt": message.created_at})

    async def _on_delivered(self, body: proto.Receipt) -> None:
        await self._receipt(body, proto.MessageStatus.DELIVERED)

    async def _on_read(self, body: proto.Receipt) -> None:
        await self._receipt(body, proto.MessageStatus.READ)

    async def _receipt(self, body: proto.Receipt, status: proto.MessageStatus) -> None:
        known = await self.runtime.routes.lookup(body.message_id)
        if known is not None and known.receiver != self.user_id:
            await self.send_error("FORBIDDEN", "only the receiver can acknowledge a message")
            return

        # the store re-checks the receiver, so an unknown route is only persisted
        await self.runtime.queue.enqueue(
            proto.UpdateStatusJob(message_id=body.message_id, status=status, actor=self.user_id)
        )
        if known is None:
            log.debug("No route for %s, %s receipt not relayed", body.message_id, status.value)
            return
        if known.sender != body.sender_id:
            log.warning("Receipt from %s names %s as sender of %s", self.user_id, body.sender_id, body.message_id)
        await self.runtime.publish(
            proto.StatusPublication(
                message_id=body.message_id,
                status=status,
                recipient_of_event=known.sender,
            )
        )

    async def _on_request_public_key(self, body: proto.RequestPublicKey) -> None:
        key = await self.runtime.directory.lookup(body.user_id)
        await self.send("publicKey", {"userId": body.user_id, "publicKey": key})

    # ------------------------------------------------------------------
    # Egress
    # ------------------------------------------------------------------

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        await self.connection.send(proto.build_frame(event, data))

    async def send_error(self, code: str, detail: str) -> None:
        log.warning("Rejected frame from %s: %s (%s)", self.user_id, code, detail)
        await self.send("error", {"code": code, "detail": detail})


class ServerRuntime:
    """Relay instance: websocket sessions on one side, the shared bus, queue and
    registries on the other. Every shared client is handed in by the caller."""

    def __init__(
        self,
        settings: Settings,
        *,
        authenticator: Authenticator,
        presence: PresenceRegistry,
        directory: KeyDirectory,
        routes: MessageRoutes,
        bus: RelayBus,
        queue: JobQueue,
        resubscribe_delay: float = 1.0,
    ) -> None:
        self.settings = settings
        self.instance_id = settings.instance_id
        self.authenticator = authenticator
        self.presence = presence
        self.directory = directory
        self.routes = routes
        self.bus = bus
        self.queue = queue
        self.resubscribe_delay = resubscribe_delay

        self._rooms: Dict[str, Set[Session]] = {}
        self._subscription: Optional[BusSubscription] = None
        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_relay(self) -> None:
        """Subscribe to the bus before returning, so no later publish is missed."""
        self._subscription = await self.bus.subscribe()
        self._tasks.append(asyncio.create_task(self._bus_loop(), name="relay-bus"))

    async def start(self) -> None:
        await self.start_relay()
        host, port = parse_listen(self.settings.listen)
        self._ws_server = await serve(self._handle_connection, host, port, process_request=self._authenticate)
        log.info("Relay %s listening on ws://%s:%d", self.instance_id, host, port)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._close_subscription()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _authenticate(self, connection: ServerConnection, request):
        token = request_token(request.headers.get("Authorization"), request.path)
        try:
            connection.user_id = self.authenticator.verify(token)
        except AuthError as exc:
            log.info("Refused connection from %s: %s", connection.remote_address, exc.reason)
            return connection.respond(HTTPStatus.UNAUTHORIZED, f"{exc.reason}\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        user_id = getattr(websocket, "user_id", None)
        if not user_id:
            await websocket.close(1008, "unauthenticated")
            return
        session = await self.open_session(user_id, Connection(websocket=websocket, ref=f"{self.instance_id}:{websocket.id}"))
        try:
            async for raw in websocket:
                await session.dispatch(raw)
        except ConnectionClosed:
            pass
        finally:
            await self.close_session(session)

    async def open_session(self, user_id: str, connection: Connection) -> Session:
        session = Session(self, user_id, connection)
        self._rooms.setdefault(user_id, set()).add(session)
        try:
            await self.presence.set_online(user_id, connection.ref)
        except Exception:
            log.exception("Could not mark %s online", user_id)
        log.info("User %s connected (%s)", user_id, connection.ref)
        return session

    async def close_session(self, session: Session) -> None:
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED
        room = self._rooms.get(session.user_id)
        if room is not None:
            room.discard(session)
            if not room:
                del self._rooms[session.user_id]
        try:
            await self.presence.clear_online(session.user_id)
        except Exception:
            log.exception("Could not clear presence for %s", session.user_id)
        log.info("User %s disconnected (%s)", session.user_id, session.connection.ref)

    def local_sessions(self, user_id: str) -> Set[Session]:
        return set(self._rooms.get(user_id, ()))

    # ------------------------------------------------------------------
    # Bus
    # ------------------------------------------------------------------

    async def publish(self, publication: proto.Publication) -> bool:
        """Best-effort real-time path. A failure is logged, never raised."""
        try:
            await self.bus.publish(publication)
            return True
        except Exception:
            log.exception("Relay publish of %s %s failed", publication.type, publication.message_id)
            return False

    async def deliver(self, delivery: Delivery) -> int:
        sessions = self.local_sessions(delivery.user_id)
        if not sessions:
            log.debug("No local connection for %s, %s not delivered here", delivery.user_id, delivery.event)
            return 0
        delivered = 0
        for session in sessions:
            try:
                await session.send(delivery.event, delivery.body)
                delivered += 1
            except ConnectionClosed:
                log.debug("Connection %s closed during delivery", session.connection.ref)
            except Exception:
                log.warning("Delivery to %s failed", session.connection.ref, exc_info=True)
        return delivered

    async def _bus_loop(self) -> None:
        while True:
            try:
                if self._subscription is None:
                    self._subscription = await self.bus.subscribe()
                async for publication in self._subscription:
                    await self.deliver(route(publication))
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Relay bus subscription lost, resubscribing in %.1fs", self.resubscribe_delay)
                await self._close_subscription()
                await asyncio.sleep(self.resubscribe_delay)

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception:
            log.debug("Error closing bus subscription", exc_info=True)


__all__ = ["ServerRuntime", "Session", "SessionState", "Connection", "request_token"]
