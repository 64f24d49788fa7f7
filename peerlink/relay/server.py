"""Relay server implementation for LAN WebRTC signaling.

The relay server (or signaling server) is a lightweight server reachable by
all peers on the local network. Peers register with their local network
address and the relay routes session descriptions, ICE candidates, and
chat messages between them by address.
"""
from __future__ import annotations

import dataclasses
import http
import json
import logging
import sys
from typing import Any

from websockets.asyncio.server import ServerConnection
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import ConnectionClosedError
from websockets.exceptions import ConnectionClosedOK
from websockets.http11 import Request
from websockets.http11 import Response

from peerlink.relay.exceptions import RelayServerError
from peerlink.relay.history import ChatHistory
from peerlink.relay.history import ChatMessage
from peerlink.relay.messages import ChatDelivery
from peerlink.relay.messages import ChatHistoryRequest
from peerlink.relay.messages import ChatHistoryResponse
from peerlink.relay.messages import ChatMessageRequest
from peerlink.relay.messages import decode_message
from peerlink.relay.messages import DisconnectRequest
from peerlink.relay.messages import encode_message
from peerlink.relay.messages import IceCandidateMessage
from peerlink.relay.messages import MessageDecodeError
from peerlink.relay.messages import MessageEncodeError
from peerlink.relay.messages import PeerDisconnected
from peerlink.relay.messages import RegisteredResponse
from peerlink.relay.messages import RegisterRequest
from peerlink.relay.messages import RelayError
from peerlink.relay.messages import SessionAnswer
from peerlink.relay.messages import SessionOffer
from peerlink.relay.messages import SignalingMessage
from peerlink.relay.registry import ConnectionRegistry
from peerlink.utils.environment import local_ip
from peerlink.utils.timestamps import epoch_ms

logger = logging.getLogger(__name__)

UNKNOWN_ADDRESS = 'unknown'
"""Sender address stamped on signaling from unregistered connections."""

SignalingRequest = SessionOffer | SessionAnswer | IceCandidateMessage


class RelayServer:
    """WebRTC signaling relay server.

    The relay server helps two peers on the same network establish a
    direct WebRTC session. Peers identify themselves with their local
    network address and the relay forwards offers, answers, and ICE
    candidates to the connections registered under the target address.
    The relay also keeps a bounded chat history for every pair of
    addresses.

    The relay never interprets session descriptions or candidates. All
    routing errors are contained: malformed envelopes are logged and
    dropped, and a failed send to one recipient does not affect others.

    The relay server is built on websockets and designed to be served
    using [`serve()`][peerlink.relay.run.serve].

    Args:
        registry: Connection registry. A new registry is created if `None`.
        history: Chat history store. A new store is created if `None`.
        server_ip: Address reported to clients on registration. Detected
            with [`local_ip()`][peerlink.utils.environment.local_ip] if
            `None`.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        registry: ConnectionRegistry | None = None,
        history: ChatHistory | None = None,
        *,
        server_ip: str | None = None,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry = (
            ConnectionRegistry() if registry is None else registry
        )
        self._history = ChatHistory() if history is None else history
        self._server_ip = local_ip() if server_ip is None else server_ip
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> ConnectionRegistry:
        """Registry of connected clients."""
        return self._registry

    @property
    def history(self) -> ChatHistory:
        """Chat history store."""
        return self._history

    @property
    def server_ip(self) -> str:
        """Local network address of the relay server."""
        return self._server_ip

    def _sender_address(self, websocket: ServerConnection) -> str | None:
        connection = self.registry.get(websocket)
        return None if connection is None else connection.address

    async def send(
        self,
        websocket: ServerConnection,
        message: SignalingMessage,
    ) -> bool:
        """Send message on the socket.

        Args:
            websocket: Websocket connection to send the message to.
            message: Message to encode and send.

        Returns:
            If the message was sent. Encoding errors and closed connections \
            are logged rather than raised.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return False

        try:
            await websocket.send(message_str)
        except ConnectionClosed:
            logger.error('Connection closed while attempting to send message')
            return False
        return True

    async def broadcast(
        self,
        message: SignalingMessage,
        exclude: ServerConnection | None = None,
    ) -> int:
        """Send a message to every open connection except `exclude`.

        Returns:
            Number of connections the message was sent to.
        """
        sent = 0
        for websocket in self.registry.open_websockets(exclude=exclude):
            if await self.send(websocket, message):
                sent += 1
        return sent

    async def register(
        self,
        websocket: ServerConnection,
        request: RegisterRequest,
    ) -> None:
        """Register client with relay server.

        Args:
            websocket: Websocket connection with client wanting to register.
            request: Registration request message.

        Raises:
            DuplicateAddressError: If the registry rejects duplicate
                addresses and the address is already registered.
        """
        connection = self.registry.register(
            websocket,
            request.local_ip,
            request.id,
        )
        logger.info(f'Registered client: {connection}')
        await self.send(
            websocket,
            RegisteredResponse(
                server_ip=self.server_ip,
                id=connection.session_id,
            ),
        )

    async def unregister(
        self,
        websocket: ServerConnection,
        expected: bool,
    ) -> None:
        """Stop routing to a websocket after its transport closed.

        Args:
            websocket: Closed websocket.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        connection = self.registry.get(websocket)
        self.registry.untrack(websocket)
        if connection is not None:
            reason = 'ok' if expected else 'unexpected'
            logger.info(
                f'Unregistering client {connection.session_id} '
                f'({connection.address}) for {reason} reason',
            )

    async def forward(
        self,
        websocket: ServerConnection,
        message: SignalingRequest,
    ) -> int:
        """Forward an offer, answer, or ICE candidate to a peer address.

        The message is sent with the sender's registered address stamped in
        `fromIP` to every connection registered with the target address,
        except the sender. Messages without a target are dropped. Messages
        to an address nobody registered are dropped and logged.

        Args:
            websocket: Websocket the message was received on.
            message: Message to forward.

        Returns:
            Number of connections the message was delivered to.
        """
        if not message.target_ip:
            logger.warning(
                f'Dropping {message.type} from {websocket.remote_address} '
                'without a target address',
            )
            return 0

        sender_ip = self._sender_address(websocket) or UNKNOWN_ADDRESS
        stamped = dataclasses.replace(message, from_ip=sender_ip)

        delivered = 0
        for target in self.registry.lookup_by_address(
            message.target_ip,
            exclude=websocket,
        ):
            if await self.send(target.websocket, stamped):
                delivered += 1

        if delivered > 0:
            logger.info(
                f'Forwarded {message.type} from {sender_ip} to '
                f'{message.target_ip}',
            )
        else:
            logger.warning(
                f'Could not find peer with address {message.target_ip} to '
                f'forward {message.type} from {sender_ip}',
            )
        return delivered

    async def chat(
        self,
        websocket: ServerConnection,
        message: ChatMessageRequest,
    ) -> None:
        """Store and deliver a chat message.

        The message is appended to the history of the sender and target pair,
        delivered to every connection registered with the target address,
        and the sender receives a
        [`ChatDelivery`][peerlink.relay.messages.ChatDelivery] report.
        Messages without a target, with blank text, or from an unregistered
        connection are dropped.
        """
        sender_ip = self._sender_address(websocket)
        if (
            not message.target_ip
            or message.text is None
            or not message.text.strip()
            or not sender_ip
        ):
            logger.debug(
                f'Dropping incomplete chat message from '
                f'{websocket.remote_address}',
            )
            return

        timestamp = (
            epoch_ms() if message.timestamp is None else message.timestamp
        )
        self.history.append(
            sender_ip,
            message.target_ip,
            ChatMessage(
                from_ip=sender_ip,
                target_ip=message.target_ip,
                text=message.text,
                timestamp=timestamp,
            ),
        )

        outgoing = ChatMessageRequest(
            target_ip=message.target_ip,
            text=message.text,
            timestamp=timestamp,
            from_ip=sender_ip,
        )
        delivered = False
        for target in self.registry.lookup_by_address(
            message.target_ip,
            exclude=websocket,
        ):
            if await self.send(target.websocket, outgoing):
                delivered = True

        logger.info(
            f'Chat message from {sender_ip} to {message.target_ip} '
            f'(delivered={delivered})',
        )
        await self.send(
            websocket,
            ChatDelivery(
                to_ip=message.target_ip,
                delivered=delivered,
                timestamp=timestamp,
            ),
        )

    async def chat_history(
        self,
        websocket: ServerConnection,
        request: ChatHistoryRequest,
    ) -> None:
        """Reply to the requester with the history it shares with a peer."""
        sender_ip = self._sender_address(websocket)
        if not request.peer_ip or not sender_ip:
            logger.debug(
                f'Dropping incomplete history request from '
                f'{websocket.remote_address}',
            )
            return

        messages = self.history.get(sender_ip, request.peer_ip)
        await self.send(
            websocket,
            ChatHistoryResponse(peer_ip=request.peer_ip, messages=messages),
        )

    async def disconnect(self, websocket: ServerConnection) -> None:
        """Remove the sender and notify all other connections."""
        connection = self.registry.remove(websocket)
        address = None if connection is None else connection.address
        logger.info(f'Client {address} sent disconnect')
        await self.broadcast(PeerDisconnected(from_ip=address), websocket)

    async def _process_message(
        self,
        websocket: ServerConnection,
        message: SignalingMessage,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, RegisterRequest):
            await self.register(websocket, message)
        elif isinstance(
            message,
            (SessionOffer, SessionAnswer, IceCandidateMessage),
        ):
            await self.forward(websocket, message)
        elif isinstance(message, ChatMessageRequest):
            await self.chat(websocket, message)
        elif isinstance(message, ChatHistoryRequest):
            await self.chat_history(websocket, message)
        elif isinstance(message, DisconnectRequest):
            await self.disconnect(websocket)
        else:
            await self.broadcast(message, websocket)

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Malformed messages are logged and dropped without closing the
        connection. The handler closes the connection with code 4003 if the
        client sends a message larger than the allowed size.

        Args:
            websocket: Websocket connection to the client.
        """
        self.registry.track(websocket)
        logger.info(f'Client connected: {websocket.remote_address}')
        try:
            await self._serve_connection(websocket)
        finally:
            # Guarantee that a closed transport is never routed to again
            self.registry.untrack(websocket)

    async def _serve_connection(self, websocket: ServerConnection) -> None:
        while True:
            try:
                message_str = await websocket.recv()
            except ConnectionClosedOK:
                await self.unregister(websocket, expected=True)
                break
            except ConnectionClosedError:
                await self.unregister(websocket, expected=False)
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {websocket.remote_address} sent message with '
                    f'size {sys.getsizeof(message_str)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                await self.unregister(websocket, expected=False)
                break

            try:
                if isinstance(message_str, bytes):
                    raise MessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_message(message_str)
            except MessageDecodeError as e:
                logger.error(
                    'Dropping message from '
                    f'{websocket.remote_address} that could not be '
                    f'decoded. {e}',
                )
                continue

            try:
                await self._process_message(websocket, message)
            except RelayServerError as e:
                logger.warning(
                    f'Error processing {message.type} from '
                    f'{websocket.remote_address}. '
                    f'{e.__class__.__name__}: {e}',
                )
                await self.send(
                    websocket,
                    RelayError(
                        message=f'{e.__class__.__name__}: {e}',
                        code=error_code(e),
                    ),
                )

    def status(self, port: int | None = None) -> dict[str, Any]:
        """Liveness report served on plain HTTP requests.

        Args:
            port: Port the relay is bound to.
        """
        websocket_url = (
            f'ws://{self.server_ip}'
            if port is None
            else f'ws://{self.server_ip}:{port}'
        )
        return {
            'message': 'PeerLink WebRTC signaling relay',
            'status': 'running',
            'localIP': self.server_ip,
            'port': port,
            'websocket': websocket_url,
            'clients': len(self.registry.get_connections()),
        }

    def process_request(
        self,
        connection: ServerConnection,
        request: Request,
    ) -> Response | None:
        """Answer plain HTTP requests before the websocket handshake.

        Requests that ask for a websocket upgrade are passed through to the
        handshake. `GET /` returns the JSON
        [`status()`][peerlink.relay.server.RelayServer.status] report and any
        other path returns 404.
        """
        if request.headers.get('Upgrade', '').lower() == 'websocket':
            return None

        if request.path.split('?', 1)[0] != '/':
            return status_response(
                http.HTTPStatus.NOT_FOUND,
                {'error': 'Not Found'},
            )

        port = None
        if connection.local_address is not None:
            port = connection.local_address[1]
        return status_response(http.HTTPStatus.OK, self.status(port))


def error_code(error: RelayServerError) -> str:
    """Short machine readable code for an error sent to clients."""
    name = error.__class__.__name__.removesuffix('Error')
    return ''.join(
        f'-{c.lower()}' if c.isupper() and i > 0 else c.lower()
        for i, c in enumerate(name)
    )


def status_response(
    status: http.HTTPStatus,
    body: dict[str, Any],
) -> Response:
    """Build a JSON HTTP response."""
    data = json.dumps(body).encode()
    headers = Headers(
        [
            ('Content-Type', 'application/json'),
            ('Content-Length', str(len(data))),
            ('Connection', 'close'),
        ],
    )
    return Response(status.value, status.phrase, headers, data)
