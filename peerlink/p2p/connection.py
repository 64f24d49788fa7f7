"""Negotiation of a WebRTC media session with a single peer."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Callable

from aiortc import MediaStreamTrack
from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp

from peerlink.p2p.exceptions import NegotiationError
from peerlink.p2p.exceptions import PeerConnectionError
from peerlink.p2p.exceptions import PeerConnectionTimeoutError
from peerlink.p2p.media import LocalMedia
from peerlink.relay.client import RelayClient
from peerlink.relay.messages import IceCandidateMessage
from peerlink.relay.messages import SessionAnswer
from peerlink.relay.messages import SessionOffer

logger = logging.getLogger(__name__)

PeerConnectionFactory = Callable[[RTCConfiguration | None], RTCPeerConnection]

_CANDIDATE_PREFIX = 'candidate:'
_SDP_CANDIDATE_PREFIX = 'a=candidate:'
_SDP_MID_PREFIX = 'a=mid:'
# foundation component protocol priority ip port typ type
_CANDIDATE_FIELDS = 8


class NegotiationState(enum.Enum):
    """State of the offer/answer exchange with a peer."""

    idle = 'idle'
    offering = 'offering'
    awaiting_answer = 'awaiting-answer'
    offered = 'offered'
    answering = 'answering'
    connected = 'connected'
    failed = 'failed'
    restarting = 'restarting'
    closed = 'closed'


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    """Convert a session description to its wire representation."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Parse the wire representation of a session description.

    Raises:
        NegotiationError: If the description is malformed.
    """
    if not isinstance(data, dict):
        raise NegotiationError(
            'Session description must be an object, got '
            f'{type(data).__name__}.',
        )
    try:
        return RTCSessionDescription(sdp=data['sdp'], type=data['type'])
    except (KeyError, TypeError, ValueError) as e:
        raise NegotiationError(f'Invalid session description: {e}') from e


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    """Convert an ICE candidate to the browser `RTCIceCandidateInit` shape."""
    return {
        'candidate': _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Any) -> RTCIceCandidate | None:
    """Parse a browser `RTCIceCandidateInit` dictionary.

    Returns:
        The candidate or `None` for the empty end-of-candidates marker.

    Raises:
        ValueError: If the candidate is not an object or its string cannot
            be parsed.
    """
    if not isinstance(data, dict):
        raise ValueError(
            f'Candidate must be an object, got {type(data).__name__}.',
        )
    sdp = data.get('candidate')
    if not sdp:
        return None
    if not isinstance(sdp, str):
        raise ValueError('Candidate must be a string.')
    if sdp.startswith(_CANDIDATE_PREFIX):
        sdp = sdp[len(_CANDIDATE_PREFIX) :]
    if len(sdp.split()) < _CANDIDATE_FIELDS:
        raise ValueError(f'Malformed candidate {sdp!r}.')
    try:
        candidate = candidate_from_sdp(sdp)
    except (IndexError, ValueError) as e:
        raise ValueError(f'Malformed candidate {sdp!r}.') from e
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


def description_candidates(
    description: RTCSessionDescription,
) -> list[RTCIceCandidate]:
    """Extract the ICE candidates written into a session description.

    aiortc gathers all local candidates while the local description is set
    and embeds them in the SDP rather than emitting `icecandidate` events.
    Each candidate is tagged with the `mid` and index of its media section.
    """
    sections: list[list[str]] = []
    for line in description.sdp.splitlines():
        if line.startswith('m='):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    candidates: list[RTCIceCandidate] = []
    for index, lines in enumerate(sections):
        mid = next(
            (
                line[len(_SDP_MID_PREFIX) :]
                for line in lines
                if line.startswith(_SDP_MID_PREFIX)
            ),
            None,
        )
        for line in lines:
            if line.startswith(_SDP_CANDIDATE_PREFIX):
                candidate = candidate_from_sdp(
                    line[len(_SDP_CANDIDATE_PREFIX) :],
                )
                candidate.sdpMid = mid
                candidate.sdpMLineIndex = index
                candidates.append(candidate)
    return candidates


def _default_factory(
    configuration: RTCConfiguration | None,
) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


class PeerSession:
    """WebRTC negotiation with one peer.

    The session drives the offer/answer exchange through the relay server
    and tracks where the exchange is.

    * Caller: `idle -> offering -> awaiting-answer -> connected`.
    * Callee: `idle -> offered -> answering -> connected`.
    * `failed` and `restarting` can be reached from any active state.

    Local ICE candidates are sent to the peer address as soon as it is known
    and buffered until then. aiortc embeds its candidates in the SDP so they
    are also sent as `ice-candidate` messages right after each offer or
    answer for peers that expect trickled candidates. Engines that emit
    `icecandidate` events have those candidates sent the same way. Remote
    candidates that arrive before the remote description is set are queued
    and applied once it is set.
    When ICE fails, the caller replaces the underlying peer connection and
    sends a fresh offer to the same peer while the callee waits for it.

    The local media is shared with later sessions: closing a session never
    stops the local tracks.

    Example:
        ```python
        caller = PeerSession(caller_relay_client, LocalMedia())
        await caller.initiate('10.0.0.3')

        # On the other peer, after receiving the offer from its relay client
        callee = PeerSession(callee_relay_client, LocalMedia())
        await callee.handle_offer(offer)

        # Back on the caller, after receiving the answer
        await caller.handle_answer(answer)
        await caller.ready()
        ```

    Args:
        relay_client: Client connection to the relay server.
        local_media: Local tracks to send. Receive only if `None`.
        configuration: ICE server configuration for the peer connection.
        pc_factory: Callable creating the underlying peer connection.
        on_track: Optional callback invoked with each remote track.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        local_media: LocalMedia | None = None,
        *,
        configuration: RTCConfiguration | None = None,
        pc_factory: PeerConnectionFactory | None = None,
        on_track: Callable[[MediaStreamTrack], None] | None = None,
    ) -> None:
        self._relay_client = relay_client
        self._local_media = (
            LocalMedia() if local_media is None else local_media
        )
        self._configuration = configuration
        self._pc_factory = (
            _default_factory if pc_factory is None else pc_factory
        )
        self._on_track = on_track

        self._state = NegotiationState.idle
        self._peer_ip: str | None = None
        self._initiator = False

        self._pending_local: list[RTCIceCandidate] = []
        self._pending_remote: list[RTCIceCandidate] = []
        self._remote_tracks: list[MediaStreamTrack] = []
        self._connected = asyncio.Event()

        self.status = 'new'
        self.error: str | None = None
        self.connecting = False

        self._pc = self._create_peer_connection()

    @property
    def _log_prefix(self) -> str:
        remote = 'pending' if self._peer_ip is None else self._peer_ip
        return (
            f'{self.__class__.__name__}'
            f'[{self._relay_client.local_ip} > {remote}]'
        )

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def peer_ip(self) -> str | None:
        """Address of the peer, once known."""
        return self._peer_ip

    @property
    def initiator(self) -> bool:
        """If this side sent the offer."""
        return self._initiator

    @property
    def active(self) -> bool:
        """If the session has started and has not been closed."""
        return self._state not in (
            NegotiationState.idle,
            NegotiationState.closed,
        )

    @property
    def peer_connection(self) -> RTCPeerConnection:
        """Underlying peer connection."""
        return self._pc

    @property
    def remote_tracks(self) -> list[MediaStreamTrack]:
        """Tracks received from the peer."""
        return list(self._remote_tracks)

    @property
    def pending_remote_candidates(self) -> int:
        """Remote candidates waiting for the remote description."""
        return len(self._pending_remote)

    @property
    def pending_local_candidates(self) -> int:
        """Local candidates waiting for the peer address."""
        return len(self._pending_local)

    def _create_peer_connection(self) -> RTCPeerConnection:
        pc = self._pc_factory(self._configuration)

        @pc.on('track')
        def on_track(track: MediaStreamTrack) -> None:
            if pc is not self._pc:
                return
            logger.info(f'{self._log_prefix}: received remote {track.kind}')
            self._remote_tracks.append(track)
            if self._on_track is not None:
                self._on_track(track)

        @pc.on('icecandidate')
        async def on_icecandidate(candidate: RTCIceCandidate | None) -> None:
            if pc is self._pc:
                await self.on_local_candidate(candidate)

        @pc.on('connectionstatechange')
        async def on_connectionstatechange() -> None:
            if pc is self._pc:
                self._on_connection_state(pc.connectionState)

        @pc.on('iceconnectionstatechange')
        async def on_iceconnectionstatechange() -> None:
            if pc is not self._pc:
                return
            logger.info(
                f'{self._log_prefix}: ICE connection state is '
                f'{pc.iceConnectionState}',
            )
            if pc.iceConnectionState == 'failed':
                logger.warning(
                    f'{self._log_prefix}: ICE connection failed, '
                    'restarting ICE',
                )
                await self.restart_ice()

        return pc

    def _on_connection_state(self, state: str) -> None:
        if self._state is NegotiationState.closed:
            return
        logger.info(f'{self._log_prefix}: connection state is {state}')
        self.status = state
        if state == 'connected':
            self.connecting = False
            self.error = None
            self._state = NegotiationState.connected
            self._connected.set()
        elif state in ('failed', 'disconnected'):
            self.error = 'Connection failed. Please try again.'
            self.connecting = False
            self._connected.clear()
            if (
                state == 'failed'
                and self._state is not NegotiationState.restarting
            ):
                self._state = NegotiationState.failed

    async def _replace_peer_connection(self) -> RTCPeerConnection:
        old = self._pc
        self._pc = self._create_peer_connection()
        self._pending_remote.clear()
        self._connected.clear()
        await old.close()
        return self._pc

    async def _add_local_media(self, pc: RTCPeerConnection) -> None:
        tracks = await self._local_media.acquire()
        for track in tracks:
            pc.addTrack(track)
        if self._initiator:
            # Always ask for the peer's audio and video
            kinds = {track.kind for track in tracks}
            for kind in ('audio', 'video'):
                if kind not in kinds:
                    pc.addTransceiver(kind, direction='recvonly')

    async def _send_offer(self) -> None:
        pc = self._pc
        self._state = NegotiationState.offering
        await self._add_local_media(pc)
        await pc.setLocalDescription(await pc.createOffer())
        assert self._peer_ip is not None
        logger.info(f'{self._log_prefix}: sending offer')
        await self._relay_client.send(
            SessionOffer(
                offer=description_to_dict(pc.localDescription),
                target_ip=self._peer_ip,
            ),
        )
        self._state = NegotiationState.awaiting_answer
        await self._send_described_candidates(pc)

    async def set_peer(self, peer_ip: str) -> None:
        """Set the peer address and send any buffered local candidates."""
        self._peer_ip = peer_ip
        pending, self._pending_local = self._pending_local, []
        for candidate in pending:
            await self._send_candidate(candidate)

    async def initiate(self, peer_ip: str) -> None:
        """Start a call by sending an offer to a peer.

        Args:
            peer_ip: Address of the peer to call.

        Raises:
            NegotiationError: If the session has already started.
            PeerConnectionError: If the offer could not be created or sent.
        """
        if self._state is not NegotiationState.idle:
            raise NegotiationError(
                f'Cannot start a call in the {self._state.value} state.',
            )
        if not peer_ip:
            raise ValueError('Peer address must be a non-empty string.')

        self._initiator = True
        self.connecting = True
        self.status = 'connecting'
        self.error = None
        await self.set_peer(peer_ip)
        try:
            await self._send_offer()
        except Exception as e:
            self._fail('Failed to create connection offer', e)
            raise PeerConnectionError(
                f'Failed to send offer to {peer_ip}: {e}',
            ) from e

    async def handle_offer(self, message: SessionOffer) -> None:
        """Answer an offer received from the relay server.

        The sender of the offer becomes the peer of this session before any
        local candidate is sent. A new offer from the current peer renegotiates
        the session on a fresh peer connection.

        Raises:
            NegotiationError: If the offer has no sender or description, or
                comes from another peer than the current one.
            PeerConnectionError: If the answer could not be created or sent.
        """
        if not message.from_ip:
            self.error = 'Received offer without sender IP'
            raise NegotiationError('Received offer without sender address.')
        if self._peer_ip is not None and message.from_ip != self._peer_ip:
            raise NegotiationError(
                f'Received offer from {message.from_ip} while negotiating '
                f'with {self._peer_ip}.',
            )
        if self._initiator and self._state is NegotiationState.awaiting_answer:
            raise NegotiationError(
                f'Received offer from {message.from_ip} while waiting for '
                'an answer to our own offer.',
            )
        description = description_from_dict(message.offer or {})

        logger.info(
            f'{self._log_prefix}: received offer from {message.from_ip}',
        )
        await self.set_peer(message.from_ip)

        pc = self._pc
        if self._state is not NegotiationState.idle:
            logger.info(f'{self._log_prefix}: renegotiating session')
            pc = await self._replace_peer_connection()

        self._initiator = False
        self.connecting = True
        self._state = NegotiationState.offered
        try:
            await pc.setRemoteDescription(description)
            await self._flush_remote_candidates()
            await self._add_local_media(pc)
            self._state = NegotiationState.answering
            await pc.setLocalDescription(await pc.createAnswer())
            logger.info(f'{self._log_prefix}: sending answer')
            await self._relay_client.send(
                SessionAnswer(
                    answer=description_to_dict(pc.localDescription),
                    target_ip=message.from_ip,
                ),
            )
            await self._send_described_candidates(pc)
        except Exception as e:
            self._fail('Failed to handle connection offer', e)
            raise PeerConnectionError(
                f'Failed to answer offer from {message.from_ip}: {e}',
            ) from e

    async def handle_answer(self, message: SessionAnswer) -> None:
        """Apply the answer to our outstanding offer.

        Raises:
            NegotiationError: If no offer is outstanding or the answer is
                from another peer.
            PeerConnectionError: If the answer could not be applied.
        """
        if self._state is not NegotiationState.awaiting_answer:
            raise NegotiationError(
                f'Received answer in the {self._state.value} state.',
            )
        if message.from_ip != self._peer_ip:
            raise NegotiationError(
                f'Received answer from {message.from_ip} but the offer was '
                f'sent to {self._peer_ip}.',
            )
        description = description_from_dict(message.answer or {})

        logger.info(f'{self._log_prefix}: received answer')
        try:
            await self._pc.setRemoteDescription(description)
        except Exception as e:
            self._fail('Failed to handle connection answer', e)
            raise PeerConnectionError(
                f'Failed to apply answer from {message.from_ip}: {e}',
            ) from e
        self.connecting = False
        self._state = NegotiationState.connected
        await self._flush_remote_candidates()

    async def on_local_candidate(
        self,
        candidate: RTCIceCandidate | None,
    ) -> None:
        """Send a locally gathered candidate to the peer.

        Candidates are buffered while the peer address is unknown and sent
        once it is set. `None` marks the end of gathering and is ignored.
        """
        if candidate is None:
            return
        if self._peer_ip is None:
            self._pending_local.append(candidate)
            logger.debug(
                f'{self._log_prefix}: buffering local candidate until the '
                'peer address is known',
            )
            return
        await self._send_candidate(candidate)

    async def _send_described_candidates(self, pc: RTCPeerConnection) -> None:
        for candidate in description_candidates(pc.localDescription):
            await self.on_local_candidate(candidate)

    async def _send_candidate(self, candidate: RTCIceCandidate) -> None:
        assert self._peer_ip is not None
        await self._relay_client.send(
            IceCandidateMessage(
                candidate=candidate_to_dict(candidate),
                target_ip=self._peer_ip,
            ),
        )
        logger.debug(f'{self._log_prefix}: sent ICE candidate')

    async def add_remote_candidate(
        self,
        message: IceCandidateMessage,
    ) -> None:
        """Apply a candidate received from the peer.

        Candidates received before the remote description is set are queued
        and applied once it is. Failures to apply a candidate are logged and
        never raised.
        """
        if message.candidate is None:
            return
        try:
            candidate = candidate_from_dict(message.candidate)
        except ValueError as e:
            logger.warning(f'{self._log_prefix}: ignoring candidate: {e}')
            return
        if candidate is None:
            return

        if self._pc.remoteDescription is None:
            logger.debug(
                f'{self._log_prefix}: ICE candidate received before remote '
                'description, will be added later',
            )
            self._pending_remote.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: could not add ICE candidate: {e!r}',
            )
        else:
            logger.debug(f'{self._log_prefix}: added ICE candidate')

    async def _flush_remote_candidates(self) -> None:
        pending, self._pending_remote = self._pending_remote, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def restart_ice(self) -> None:
        """Renegotiate the session after an ICE failure.

        The caller replaces the peer connection and sends a new offer to the
        same peer. The callee only marks the session as restarting and
        answers the new offer when it arrives.
        """
        if not self.active or self._peer_ip is None:
            return
        self._state = NegotiationState.restarting
        self.connecting = True
        if not self._initiator:
            logger.info(f'{self._log_prefix}: waiting for peer to restart')
            return

        try:
            await self._replace_peer_connection()
            await self._send_offer()
        except Exception as e:
            self._fail('Failed to restart connection', e)

    def _fail(self, error: str, exception: BaseException) -> None:
        logger.error(f'{self._log_prefix}: {error}: {exception!r}')
        self.error = error
        self.connecting = False
        self._state = NegotiationState.failed

    async def ready(self, timeout: float | None = None) -> None:
        """Wait for the transport to the peer to be connected.

        Args:
            timeout: The maximum time in seconds to wait. If `None`, block
                until the connection is established.

        Raises:
            PeerConnectionTimeoutError: If the connection is not ready within
                the timeout.
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise PeerConnectionTimeoutError(
                'Timeout waiting for peer to peer connection to establish '
                f'in {self._log_prefix}.',
            ) from e

    async def close(self) -> None:
        """Close the session.

        Remote tracks are released. Local media is kept for the next call.
        """
        if self._state is NegotiationState.closed:
            return
        logger.info(f'{self._log_prefix}: closing session')
        self._state = NegotiationState.closed
        self._pending_local.clear()
        self._pending_remote.clear()
        self._remote_tracks.clear()
        self._connected.clear()
        await self._pc.close()
        self.connecting = False
        self.status = 'disconnected'
        self.error = None
