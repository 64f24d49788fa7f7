"""Manager of the single call an endpoint takes part in."""
from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Generator

import websockets.exceptions
from aiortc import MediaStreamTrack
from aiortc import RTCConfiguration

from peerlink.p2p.connection import PeerConnectionFactory
from peerlink.p2p.connection import PeerSession
from peerlink.p2p.exceptions import CallInProgressError
from peerlink.p2p.exceptions import PeerConnectionError
from peerlink.p2p.media import LocalMedia
from peerlink.relay.client import RelayClient
from peerlink.relay.messages import CallRejected
from peerlink.relay.messages import ChatDelivery
from peerlink.relay.messages import ChatHistoryRequest
from peerlink.relay.messages import ChatHistoryResponse
from peerlink.relay.messages import ChatMessageRequest
from peerlink.relay.messages import DisconnectRequest
from peerlink.relay.messages import IceCandidateMessage
from peerlink.relay.messages import MessageDecodeError
from peerlink.relay.messages import PeerDisconnected
from peerlink.relay.messages import RegisteredResponse
from peerlink.relay.messages import RelayError
from peerlink.relay.messages import SessionAnswer
from peerlink.relay.messages import SessionOffer
from peerlink.relay.messages import SignalingMessage
from peerlink.utils.tasks import SafeTaskExitError
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

BUSY_REASON = 'busy'
"""Reason sent to a caller when the callee is already in a call."""


class CallManager:
    """Call and chat manager for one endpoint.

    Listens for messages from the relay server, answers incoming calls,
    starts outgoing calls, and exposes chat traffic. An endpoint takes part
    in at most one call: offers from other peers while a call is active are
    declined with a
    [`CallRejected`][peerlink.relay.messages.CallRejected] message.

    Example:
        ```python
        from peerlink.p2p.manager import CallManager
        from peerlink.relay.client import RelayClient

        relay_client = RelayClient('ws://10.0.0.1:3001', '10.0.0.2')

        async with CallManager(relay_client) as manager:
            session = await manager.call('10.0.0.3')
            await session.ready(timeout=30)
            await manager.send_chat('10.0.0.3', 'hi')
            event = await manager.recv_event()
        ```

    Args:
        relay_client: Client interface to the relay server.
        local_media: Local tracks sent in every call. Preserved when a call
            ends.
        configuration: ICE server configuration for new peer connections.
        pc_factory: Callable creating the underlying peer connections.
        on_track: Optional callback invoked with each remote track.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        *,
        local_media: LocalMedia | None = None,
        configuration: RTCConfiguration | None = None,
        pc_factory: PeerConnectionFactory | None = None,
        on_track: Callable[[MediaStreamTrack], None] | None = None,
    ) -> None:
        self._relay_client = relay_client
        self._local_media = (
            LocalMedia() if local_media is None else local_media
        )
        self._configuration = configuration
        self._pc_factory = pc_factory
        self._on_track = on_track

        self._session: PeerSession | None = None
        self._events: asyncio.Queue[SignalingMessage] = asyncio.Queue()
        self._server_task: asyncio.Task[None] | None = None
        self._error: str | None = None

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self.local_ip}]'

    @property
    def local_ip(self) -> str:
        """Address registered with the relay server."""
        return self._relay_client.local_ip

    @property
    def local_media(self) -> LocalMedia:
        """Local tracks shared by all calls."""
        return self._local_media

    @property
    def relay_client(self) -> RelayClient:
        """Relay client interface."""
        return self._relay_client

    @property
    def session(self) -> PeerSession | None:
        """Active call, if any."""
        if self._session is not None and self._session.active:
            return self._session
        return None

    @property
    def status(self) -> str:
        """Status of the active call or `#!python 'disconnected'`."""
        session = self.session
        return 'disconnected' if session is None else session.status

    @property
    def error(self) -> str | None:
        """Last error to show the user."""
        session = self.session
        if session is not None and session.error is not None:
            return session.error
        return self._error

    async def async_init(self) -> None:
        """Connect to relay server and begin listening to incoming messages."""
        await self._relay_client.connect()
        if self._server_task is None:
            self._server_task = spawn_guarded_background_task(
                self._handle_server_messages,
                task_name='call-manager-server-message-handler',
            )

    async def __aenter__(self) -> CallManager:
        await self.async_init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, CallManager]:
        return self.__aenter__().__await__()

    def _new_session(self) -> PeerSession:
        self._error = None
        self._session = PeerSession(
            self._relay_client,
            self._local_media,
            configuration=self._configuration,
            pc_factory=self._pc_factory,
            on_track=self._on_track,
        )
        return self._session

    async def call(self, peer_ip: str) -> PeerSession:
        """Start a call with a peer.

        Args:
            peer_ip: Address of the peer to call.

        Returns:
            The session negotiating the call.

        Raises:
            ValueError: If `peer_ip` is empty.
            CallInProgressError: If a call is already active.
            PeerConnectionError: If the offer could not be sent.
        """
        if not peer_ip:
            self._error = 'Please enter peer IP address'
            raise ValueError('Peer address must be a non-empty string.')
        if self.session is not None:
            raise CallInProgressError(
                f'A call with {self.session.peer_ip} is already active.',
            )

        session = self._new_session()
        logger.info(f'{self._log_prefix}: calling {peer_ip}')
        try:
            await session.initiate(peer_ip)
        except PeerConnectionError:
            await self._abandon(session)
            raise
        return session

    async def _abandon(self, session: PeerSession) -> None:
        # A call that never connected must not keep the endpoint busy
        error = session.error
        await self.hangup()
        self._error = error

    async def hangup(self) -> None:
        """End the active call but keep the relay connection and media."""
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def send_chat(self, peer_ip: str, text: str) -> None:
        """Send a chat message to a peer through the relay server.

        The relay replies with a
        [`ChatDelivery`][peerlink.relay.messages.ChatDelivery] event.
        """
        await self._relay_client.send(
            ChatMessageRequest(target_ip=peer_ip, text=text),
        )

    async def request_history(self, peer_ip: str) -> None:
        """Ask the relay server for the chat history with a peer.

        The relay replies with a
        [`ChatHistoryResponse`][peerlink.relay.messages.ChatHistoryResponse]
        event.
        """
        await self._relay_client.send(ChatHistoryRequest(peer_ip=peer_ip))

    async def recv_event(self) -> SignalingMessage:
        """Receive the next chat, delivery, history, or notice event."""
        return await self._events.get()

    async def _handle_offer(self, message: SessionOffer) -> None:
        session = self.session
        if session is not None and session.peer_ip != message.from_ip:
            logger.warning(
                f'{self._log_prefix}: declining offer from '
                f'{message.from_ip} during call with {session.peer_ip}',
            )
            await self._relay_client.send(
                CallRejected(target_ip=message.from_ip, reason=BUSY_REASON),
            )
            return
        if session is not None:
            await session.handle_offer(message)
            return

        session = self._new_session()
        try:
            await session.handle_offer(message)
        except PeerConnectionError:
            await self._abandon(session)
            raise

    async def _handle_call_rejected(self, message: CallRejected) -> None:
        # Rejections are broadcast by the relay so most are for other peers
        if message.target_ip != self.local_ip:
            return
        session = self.session
        if session is not None and session.peer_ip == message.from_ip:
            logger.warning(
                f'{self._log_prefix}: {message.from_ip} declined the call '
                f'({message.reason})',
            )
            await self.hangup()
            self._error = f'Peer {message.from_ip} is busy.'
            await self._events.put(message)

    async def _handle_peer_disconnected(
        self,
        message: PeerDisconnected,
    ) -> None:
        session = self.session
        if session is not None and message.from_ip in (None, session.peer_ip):
            logger.info(
                f'{self._log_prefix}: peer {session.peer_ip} disconnected',
            )
            await self.hangup()
        await self._events.put(message)

    async def _dispatch(self, message: SignalingMessage) -> None:
        session = self.session
        if isinstance(message, SessionOffer):
            await self._handle_offer(message)
        elif isinstance(message, (SessionAnswer, IceCandidateMessage)):
            if session is None or session.peer_ip != message.from_ip:
                logger.warning(
                    f'{self._log_prefix}: dropping {message.type} from '
                    f'{message.from_ip} with no matching call',
                )
            elif isinstance(message, SessionAnswer):
                await session.handle_answer(message)
            else:
                await session.add_remote_candidate(message)
        elif isinstance(message, CallRejected):
            await self._handle_call_rejected(message)
        elif isinstance(message, PeerDisconnected):
            await self._handle_peer_disconnected(message)
        elif isinstance(
            message,
            (ChatMessageRequest, ChatDelivery, ChatHistoryResponse),
        ):
            await self._events.put(message)
        elif isinstance(message, RelayError):
            logger.error(
                f'{self._log_prefix}: relay server error: {message.message}',
            )
            self._error = message.message
            await self._events.put(message)
        elif isinstance(message, RegisteredResponse):
            logger.debug(f'{self._log_prefix}: registered with relay server')
        else:
            logger.debug(
                f'{self._log_prefix}: ignoring {message.type} message',
            )

    async def _handle_server_messages(self) -> None:
        """Handle messages from the relay server."""
        logger.info(
            f'{self._log_prefix}: listening for messages from relay server',
        )
        while True:
            try:
                message = await self._relay_client.recv()
            except websockets.exceptions.ConnectionClosedOK:
                break
            except websockets.exceptions.ConnectionClosedError:
                break
            except MessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error deserializing message from '
                    f'relay server: {e} ...skipping message',
                )
                continue

            try:
                await self._dispatch(message)
            except PeerConnectionError as e:
                logger.error(
                    f'{self._log_prefix}: failed to handle {message.type} '
                    f'from {getattr(message, "from_ip", None)}: {e}',
                )
                if self.error is None:
                    self._error = str(e)
            except websockets.exceptions.ConnectionClosed:
                logger.warning(
                    f'{self._log_prefix}: relay connection closed while '
                    f'handling {message.type}',
                )

    async def disconnect(self) -> None:
        """Leave the relay server.

        Ends the active call, tells the relay this endpoint is leaving, and
        closes the relay connection. Local media stays live.
        """
        await self.hangup()
        if self._relay_client.connected:
            try:
                await self._relay_client.send(DisconnectRequest())
            except websockets.exceptions.ConnectionClosed:
                logger.debug(
                    f'{self._log_prefix}: relay connection already closed',
                )
        await self._stop_server_task()
        await self._relay_client.close()
        self._error = None
        logger.info(f'{self._log_prefix}: disconnected from relay server')

    async def _stop_server_task(self) -> None:
        if self._server_task is not None:
            self._server_task.cancel()
            try:
                await self._server_task
            except (asyncio.CancelledError, SafeTaskExitError):
                pass
            self._server_task = None

    async def close(self) -> None:
        """Close the manager.

        Warning:
            This will end the active call, close the connection to the relay
            server, and stop the local media.
        """
        await self.disconnect()
        self._local_media.stop()
        logger.info(f'{self._log_prefix}: call manager closed')
