"""Peer side of the relay connection."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websocket_connect
from websockets.protocol import State

from peerlink.relay.exceptions import RelayNotConnectedError
from peerlink.relay.exceptions import RelayRegistrationError
from peerlink.relay.messages import decode_message
from peerlink.relay.messages import encode_message
from peerlink.relay.messages import MessageDecodeError
from peerlink.relay.messages import RegisteredResponse
from peerlink.relay.messages import RegisterRequest
from peerlink.relay.messages import RelayError
from peerlink.relay.messages import SignalingMessage
from peerlink.utils.environment import local_ip as detect_local_ip
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 60.0

# Failures after which connect() sleeps and registers again
_RETRYABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.ConnectionClosed,
)


def _client_ssl_context(
    address: str,
    ssl_context: ssl.SSLContext | None,
    verify_certificate: bool,
) -> ssl.SSLContext | None:
    if ssl_context is not None or not address.startswith('wss://'):
        return ssl_context
    context = ssl.create_default_context()
    if not verify_certificate:
        # Relays on a LAN usually serve self-signed certificates
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class RelayClient:
    """Registered connection from a peer to the relay server.

    A peer is addressed by its local network address: the client registers
    that address when the websocket opens, and does so again every time the
    connection is re-established so peers can keep reaching it.

    Tip:
        The client is an async context manager.
        ```python
        from peerlink.relay.client import RelayClient
        from peerlink.relay.messages import ChatMessageRequest

        async with RelayClient('ws://10.0.0.1:3001', '10.0.0.2') as client:
            message = ChatMessageRequest(target_ip='10.0.0.3', text='hi')
            await client.send(message)
            delivery = await client.recv()
        ```

    Note:
        Nothing is opened in the constructor. The first
        [`send()`][peerlink.relay.client.RelayClient.send],
        [`recv()`][peerlink.relay.client.RelayClient.recv], or
        [`connect()`][peerlink.relay.client.RelayClient.connect] call
        registers with the relay.

    Args:
        address: Relay server URI starting with `ws://` or `wss://`.
        local_ip: Address to register as. Defaults to
            [`local_ip()`][peerlink.utils.environment.local_ip].
        client_id: Session id to register with. The relay picks one if
            `None`, and the chosen id is reused on reconnection.
        reconnect_task: Watch the connection in a background task and
            register again as soon as it closes. When `False`, a closed
            connection is only reopened by the next send or receive.
        ssl_context: TLS context for `wss://` relays. A default context is
            created when `None`.
        timeout: Seconds to wait for the websocket to open and for the
            registration reply.
        verify_certificate: Check the relay certificate when the default TLS
            context is used.

    Raises:
        ValueError: If `address` is not a `ws://` or `wss://` URI.
    """

    def __init__(
        self,
        address: str,
        local_ip: str | None = None,
        *,
        client_id: str | None = None,
        reconnect_task: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not address.startswith(('ws://', 'wss://')):
            raise ValueError(
                f'Relay address {address!r} must start with ws:// or wss://.',
            )

        self._address = address
        self._local_ip = detect_local_ip() if local_ip is None else local_ip
        self._client_id = client_id
        self._server_ip: str | None = None
        self._timeout = timeout
        self._ssl_context = _client_ssl_context(
            address,
            ssl_context,
            verify_certificate,
        )
        self._watch = reconnect_task

        self._initial_backoff_seconds = 1.0

        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._websocket: ClientConnection | None = None
        self._closing = False

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Relay server URI."""
        return self._address

    @property
    def local_ip(self) -> str:
        """Address this peer is registered as."""
        return self._local_ip

    @property
    def client_id(self) -> str | None:
        """Session id of the registration, once known."""
        return self._client_id

    @property
    def server_ip(self) -> str | None:
        """Relay address from the last registration reply."""
        return self._server_ip

    @property
    def connected(self) -> bool:
        """If the registered websocket is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Open websocket to the relay.

        Raises:
            RelayNotConnectedError: If there is no open websocket. Call
                [`connect()`][peerlink.relay.client.RelayClient.connect]
                first.
        """
        if not self.connected:
            raise RelayNotConnectedError(
                f'No open connection to the relay at {self._address}. '
                'Try calling connect() first.',
            )
        assert self._websocket is not None
        return self._websocket

    async def _register(self, timeout: float) -> ClientConnection:
        """Open a websocket and complete the registration exchange.

        Returns:
            The registered websocket.

        Raises:
            OSError: If the relay cannot be reached.
            asyncio.TimeoutError: If opening or the reply takes longer than
                `timeout`.
            websockets.exceptions.ConnectionClosed: If the relay closes the
                websocket before replying.
            RelayRegistrationError: If the relay reply is not a
                registration acknowledgement.
        """
        websocket = await websocket_connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
        )
        await websocket.send(
            encode_message(
                RegisterRequest(local_ip=self._local_ip, id=self._client_id),
            ),
        )

        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout)
            if not isinstance(raw, str):
                raise AssertionError('Received non-string type on websocket.')
            reply = decode_message(raw)
        except MessageDecodeError as e:
            await websocket.close()
            raise RelayRegistrationError(
                'Unable to decode response message from relay server.',
            ) from e

        if not isinstance(reply, RegisteredResponse):
            await websocket.close()
            if isinstance(reply, RelayError):
                raise RelayRegistrationError(
                    f'Relay refused registration as {self._local_ip}: '
                    f'{reply.message}',
                )
            raise RelayRegistrationError(
                'Relay replied to registration with unknown message type: '
                f'{reply.type}.',
            )

        self._server_ip = reply.server_ip
        if self._client_id is None:
            self._client_id = reply.id
        logger.info(
            f'Registered with relay at {self._address} as {self._local_ip} '
            f'(id={self._client_id}, relay address {self._server_ip})',
        )
        return websocket

    async def _reconnect_on_close(self) -> None:
        """Register again whenever the current websocket closes."""
        while not self._closing:
            assert self._websocket is not None
            await self._websocket.wait_closed()
            if not self._closing:
                logger.info(
                    f'Connection to relay at {self._address} closed, '
                    'reconnecting',
                )
                await self.connect()

    async def connect(self, retry: bool = True) -> None:
        """Register with the relay unless already connected.

        Note:
            Sending and receiving connect on demand so this is rarely
            needed directly.

        Args:
            retry: Keep retrying failed attempts, sleeping one second after
                the first failure and doubling the wait up to a minute.
                Otherwise, the first failure is raised.
        """
        async with self._connect_lock:
            if self.connected:
                return

            self._closing = False
            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._register(self._timeout)
                except _RETRYABLE_ERRORS as e:
                    if not retry:
                        raise
                    logger.warning(
                        f'Could not register with relay at {self._address} '
                        f'({e!r}). Retrying connection in {backoff_seconds} '
                        'seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        _MAX_BACKOFF_SECONDS,
                    )
                else:
                    break

            if self._watch and self._reconnect_task is None:
                self._reconnect_task = spawn_guarded_background_task(
                    self._reconnect_on_close,
                    task_name='relay-client-reconnect',
                )

    async def close(self) -> None:
        """Close the relay connection and stop reconnecting."""
        self._closing = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._websocket is not None:
            await self._websocket.close()

    async def _open_websocket(self) -> ClientConnection:
        if not self.connected:
            await self.connect()
        return self.websocket

    async def recv(self) -> SignalingMessage:
        """Receive the next message from the relay.

        Raises:
            MessageDecodeError: If the frame is not a valid envelope.
        """
        websocket = await self._open_websocket()
        raw = await websocket.recv()
        if not isinstance(raw, str):
            raise MessageDecodeError('Received non-string from websocket.')
        return decode_message(raw)

    async def send(self, message: SignalingMessage) -> None:
        """Send a message to the relay.

        Raises:
            MessageEncodeError: If the message cannot be encoded.
        """
        data = encode_message(message)
        websocket = await self._open_websocket()
        await websocket.send(data)
