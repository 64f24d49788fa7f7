from __future__ import annotations

import asyncio
import logging
from unittest import mock

import pytest
import websockets.exceptions
from aiortc import AudioStreamTrack
from aiortc import RTCConfiguration

from peerlink.p2p.connection import NegotiationState
from peerlink.p2p.exceptions import CallInProgressError
from peerlink.p2p.exceptions import PeerConnectionError
from peerlink.p2p.manager import BUSY_REASON
from peerlink.p2p.manager import CallManager
from peerlink.p2p.media import LocalMedia
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
from peerlink.relay.messages import UnknownMessage
from testing.p2p import fake_relay_client
from testing.p2p import FakeFactory
from testing.p2p import FakePeerConnection
from testing.p2p import make_candidate
from testing.utils import wait_until

_OFFER = {'type': 'offer', 'sdp': 'v=0 remote offer'}
_ANSWER = {'type': 'answer', 'sdp': 'v=0 remote answer'}


def make_manager(
    local_ip: str = '10.0.0.2',
    **kwargs,
) -> tuple[CallManager, mock.MagicMock, FakeFactory]:
    client = fake_relay_client(local_ip)
    client.connect = mock.AsyncMock()
    client.close = mock.AsyncMock()
    client.recv = mock.AsyncMock(
        side_effect=websockets.exceptions.ConnectionClosedOK(None, None),
    )
    client.connected = True
    factory = FakeFactory()
    manager = CallManager(client, pc_factory=factory, **kwargs)
    return manager, client, factory


def sent(client: mock.MagicMock) -> list:
    return [c.args[0] for c in client.send.await_args_list]


@pytest.mark.asyncio()
async def test_initial_state() -> None:
    manager, client, _ = make_manager()
    assert manager.local_ip == '10.0.0.2'
    assert manager.relay_client is client
    assert manager.session is None
    assert manager.status == 'disconnected'
    assert manager.error is None
    assert not manager.local_media.acquired


@pytest.mark.asyncio()
async def test_call() -> None:
    manager, client, factory = make_manager()

    session = await manager.call('10.0.0.3')

    assert manager.session is session
    assert manager.status == 'connecting'
    assert session.peer_ip == '10.0.0.3'
    (offer,) = sent(client)
    assert isinstance(offer, SessionOffer)
    assert offer.target_ip == '10.0.0.3'
    assert factory.created[0].localDescription is not None


@pytest.mark.asyncio()
async def test_call_passes_configuration() -> None:
    configuration = RTCConfiguration(iceServers=[])
    manager, _, factory = make_manager(configuration=configuration)
    await manager.call('10.0.0.3')
    assert factory.created[0].configuration is configuration


@pytest.mark.asyncio()
async def test_call_empty_address() -> None:
    manager, client, _ = make_manager()
    with pytest.raises(ValueError):
        await manager.call('')
    assert manager.error == 'Please enter peer IP address'
    client.send.assert_not_awaited()


@pytest.mark.asyncio()
async def test_call_while_in_call() -> None:
    manager, _, _ = make_manager()
    await manager.call('10.0.0.3')
    with pytest.raises(CallInProgressError, match='10.0.0.3'):
        await manager.call('10.0.0.4')


@pytest.mark.asyncio()
async def test_failed_call_does_not_keep_endpoint_busy() -> None:
    manager, client, factory = make_manager()
    client.send.side_effect = websockets.exceptions.ConnectionClosedError(
        None,
        None,
    )

    with pytest.raises(PeerConnectionError, match='10.0.0.3'):
        await manager.call('10.0.0.3')

    assert manager.session is None
    assert manager.status == 'disconnected'
    assert manager.error == 'Failed to create connection offer'
    assert factory.created[0].closed

    client.send.side_effect = None
    await manager._dispatch(SessionOffer(offer=_OFFER, from_ip='10.0.0.5'))
    assert manager.session is not None
    assert manager.session.peer_ip == '10.0.0.5'
    assert isinstance(sent(client)[-1], SessionAnswer)
    await manager.hangup()

    session = await manager.call('10.0.0.4')
    assert manager.session is session
    assert manager.error is None


@pytest.mark.asyncio()
async def test_failed_incoming_offer_does_not_keep_endpoint_busy() -> None:
    created: list[FakePeerConnection] = []

    def _factory(configuration):
        pc = FakePeerConnection(configuration)
        if not created:
            pc.fail_on.add('createAnswer')
        created.append(pc)
        return pc

    manager, client, _ = make_manager('10.0.0.3')
    manager._pc_factory = _factory

    with pytest.raises(PeerConnectionError):
        await manager._dispatch(
            SessionOffer(offer=_OFFER, from_ip='10.0.0.2'),
        )

    assert manager.session is None
    assert manager.error == 'Failed to handle connection offer'
    assert created[0].closed
    client.send.assert_not_awaited()

    await manager._dispatch(SessionOffer(offer=_OFFER, from_ip='10.0.0.4'))
    assert manager.session is not None
    assert manager.session.peer_ip == '10.0.0.4'
    (answer,) = sent(client)
    assert isinstance(answer, SessionAnswer)
    assert answer.target_ip == '10.0.0.4'


@pytest.mark.asyncio()
async def test_call_after_hangup() -> None:
    manager, _, factory = make_manager()
    first = await manager.call('10.0.0.3')
    await manager.hangup()

    assert first.state is NegotiationState.closed
    assert factory.created[0].closed
    assert manager.session is None

    second = await manager.call('10.0.0.4')
    assert second is not first
    assert manager.session is second


@pytest.mark.asyncio()
async def test_incoming_offer_is_answered() -> None:
    manager, client, _ = make_manager('10.0.0.3')

    await manager._dispatch(SessionOffer(offer=_OFFER, from_ip='10.0.0.2'))

    session = manager.session
    assert session is not None
    assert session.peer_ip == '10.0.0.2'
    assert not session.initiator
    (answer,) = sent(client)
    assert isinstance(answer, SessionAnswer)
    assert answer.target_ip == '10.0.0.2'


@pytest.mark.asyncio()
async def test_offer_while_busy_is_rejected(caplog) -> None:
    caplog.set_level(logging.WARNING)
    manager, client, _ = make_manager()
    session = await manager.call('10.0.0.3')

    await manager._dispatch(SessionOffer(offer=_OFFER, from_ip='10.0.0.4'))

    assert manager.session is session
    assert session.state is NegotiationState.awaiting_answer
    rejection = sent(client)[-1]
    assert isinstance(rejection, CallRejected)
    assert rejection.target_ip == '10.0.0.4'
    assert rejection.reason == BUSY_REASON
    assert 'declining offer from 10.0.0.4' in caplog.text


@pytest.mark.asyncio()
async def test_offer_from_current_peer_renegotiates() -> None:
    manager, client, factory = make_manager('10.0.0.3')
    offer = SessionOffer(offer=_OFFER, from_ip='10.0.0.2')
    await manager._dispatch(offer)
    session = manager.session

    await manager._dispatch(offer)

    assert manager.session is session
    assert len(factory.created) == 2
    assert all(isinstance(m, SessionAnswer) for m in sent(client))


@pytest.mark.asyncio()
async def test_answer_and_candidate_routed_to_call() -> None:
    manager, _, factory = make_manager()
    session = await manager.call('10.0.0.3')

    await manager._dispatch(
        SessionAnswer(answer=_ANSWER, from_ip='10.0.0.3'),
    )
    assert session.state is NegotiationState.connected

    await manager._dispatch(
        IceCandidateMessage(
            candidate={
                'candidate': 'candidate:1 1 udp 100 10.0.0.3 4000 typ host',
                'sdpMid': '0',
                'sdpMLineIndex': 0,
            },
            from_ip='10.0.0.3',
        ),
    )
    assert len(factory.created[0].candidates) == 1


@pytest.mark.asyncio()
async def test_messages_without_matching_call_dropped(caplog) -> None:
    caplog.set_level(logging.WARNING)
    manager, _, factory = make_manager()

    await manager._dispatch(
        SessionAnswer(answer=_ANSWER, from_ip='10.0.0.3'),
    )
    assert manager.session is None

    await manager.call('10.0.0.3')
    await manager._dispatch(
        IceCandidateMessage(candidate={}, from_ip='10.0.0.4'),
    )
    assert factory.created[0].candidates == []
    assert 'with no matching call' in caplog.text


@pytest.mark.asyncio()
async def test_call_rejected_by_peer() -> None:
    manager, _, _ = make_manager()
    session = await manager.call('10.0.0.3')
    rejection = CallRejected(
        target_ip='10.0.0.2',
        reason=BUSY_REASON,
        from_ip='10.0.0.3',
    )

    await manager._dispatch(rejection)

    assert manager.session is None
    assert session.state is NegotiationState.closed
    assert manager.error == 'Peer 10.0.0.3 is busy.'
    assert await manager.recv_event() is rejection


@pytest.mark.asyncio()
async def test_call_rejected_for_other_peer_ignored() -> None:
    manager, _, _ = make_manager()
    session = await manager.call('10.0.0.3')

    # Rejections reach every client so only the addressed caller acts
    await manager._dispatch(
        CallRejected(target_ip='10.0.0.9', from_ip='10.0.0.3'),
    )
    await manager._dispatch(
        CallRejected(target_ip='10.0.0.2', from_ip='10.0.0.4'),
    )

    assert manager.session is session
    assert manager.error is None
    assert manager._events.empty()


@pytest.mark.asyncio()
async def test_peer_disconnected_ends_call() -> None:
    manager, _, _ = make_manager()
    session = await manager.call('10.0.0.3')
    notice = PeerDisconnected(from_ip='10.0.0.3')

    await manager._dispatch(notice)

    assert manager.session is None
    assert session.state is NegotiationState.closed
    assert await manager.recv_event() is notice


@pytest.mark.asyncio()
async def test_other_peer_disconnected_keeps_call() -> None:
    manager, _, _ = make_manager()
    session = await manager.call('10.0.0.3')
    notice = PeerDisconnected(from_ip='10.0.0.4')

    await manager._dispatch(notice)

    assert manager.session is session
    assert await manager.recv_event() is notice


@pytest.mark.asyncio()
async def test_chat_events_queued() -> None:
    manager, _, _ = make_manager()
    messages = [
        ChatMessageRequest(text='hi', timestamp=1, from_ip='10.0.0.3'),
        ChatDelivery(to_ip='10.0.0.3', delivered=True, timestamp=1),
        ChatHistoryResponse(peer_ip='10.0.0.3'),
    ]
    for message in messages:
        await manager._dispatch(message)

    for message in messages:
        assert await manager.recv_event() is message


@pytest.mark.asyncio()
async def test_relay_error_sets_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    manager, _, _ = make_manager()
    error = RelayError(message='Peer not registered.', code='not-registered')

    await manager._dispatch(error)

    assert manager.error == 'Peer not registered.'
    assert await manager.recv_event() is error
    assert 'Peer not registered.' in caplog.text


@pytest.mark.asyncio()
async def test_ignored_messages() -> None:
    manager, _, _ = make_manager()
    await manager._dispatch(RegisteredResponse(server_ip='10.0.0.1'))
    await manager._dispatch(UnknownMessage(name='custom'))
    assert manager._events.empty()


@pytest.mark.asyncio()
async def test_send_chat_and_request_history() -> None:
    manager, client, _ = make_manager()

    await manager.send_chat('10.0.0.3', 'hello')
    await manager.request_history('10.0.0.3')

    chat, history = sent(client)
    assert chat == ChatMessageRequest(target_ip='10.0.0.3', text='hello')
    assert history == ChatHistoryRequest(peer_ip='10.0.0.3')


@pytest.mark.asyncio()
async def test_server_message_loop(caplog) -> None:
    caplog.set_level(logging.ERROR)
    manager, client, _ = make_manager()
    delivery = ChatDelivery(to_ip='10.0.0.3', delivered=False)
    client.recv.side_effect = [
        MessageDecodeError('bad'),
        delivery,
        websockets.exceptions.ConnectionClosedOK(None, None),
    ]

    await manager.async_init()
    client.connect.assert_awaited_once()
    assert manager._server_task is not None
    await asyncio.wait_for(manager._server_task, 1)

    assert await manager.recv_event() is delivery
    assert 'error deserializing message' in caplog.text


@pytest.mark.asyncio()
async def test_server_message_loop_survives_call_errors(caplog) -> None:
    caplog.set_level(logging.ERROR)

    def _factory(configuration):
        pc = FakePeerConnection(configuration)
        pc.fail_on.add('createAnswer')
        return pc

    manager, client, _ = make_manager('10.0.0.3')
    manager._pc_factory = _factory
    notice = PeerDisconnected(from_ip='10.0.0.9')
    client.recv.side_effect = [
        SessionOffer(offer=_OFFER),
        SessionOffer(offer=_OFFER, from_ip='10.0.0.2'),
        notice,
        websockets.exceptions.ConnectionClosedError(None, None),
    ]

    await manager.async_init()
    await asyncio.wait_for(manager._server_task, 1)

    assert manager.error == 'Failed to handle connection offer'
    assert await manager.recv_event() is notice
    assert 'failed to handle offer' in caplog.text


@pytest.mark.asyncio()
async def test_remote_tracks_callback() -> None:
    received = []
    manager, _, factory = make_manager(on_track=received.append)
    await manager.call('10.0.0.3')
    track = AudioStreamTrack()

    factory.created[0].emit('track', track)

    assert received == [track]
    track.stop()


@pytest.mark.asyncio()
async def test_disconnect_keeps_local_media() -> None:
    audio = AudioStreamTrack()
    media = LocalMedia(lambda: [audio])
    manager, client, _ = make_manager(local_media=media)
    await manager.async_init()
    session = await manager.call('10.0.0.3')

    await manager.disconnect()

    assert session.state is NegotiationState.closed
    assert isinstance(sent(client)[-1], DisconnectRequest)
    client.close.assert_awaited_once()
    assert manager._server_task is None
    assert manager.error is None
    assert audio.readyState == 'live'

    await manager.close()
    assert audio.readyState == 'ended'


@pytest.mark.asyncio()
async def test_disconnect_when_relay_closed() -> None:
    manager, client, _ = make_manager()
    client.send.side_effect = websockets.exceptions.ConnectionClosedError(
        None,
        None,
    )

    await manager.disconnect()

    client.close.assert_awaited_once()


@pytest.mark.asyncio()
async def test_disconnect_when_not_connected() -> None:
    manager, client, _ = make_manager()
    client.connected = False

    await manager.disconnect()

    client.send.assert_not_awaited()
    client.close.assert_awaited_once()


@pytest.mark.asyncio()
async def test_context_manager() -> None:
    manager, client, _ = make_manager()
    async with manager as entered:
        assert entered is manager
        client.connect.assert_awaited_once()
    client.close.assert_awaited_once()


@pytest.mark.asyncio()
async def test_await_manager() -> None:
    manager, client, _ = make_manager()
    assert await manager is manager
    client.connect.assert_awaited_once()
    await manager.close()


@pytest.mark.asyncio()
async def test_call_manager_over_relay(relay_server) -> None:
    from peerlink.relay.client import RelayClient
    from testing.p2p import LOCAL_CONFIGURATION

    caller = CallManager(
        RelayClient(relay_server.address, '10.0.0.2'),
        local_media=LocalMedia(lambda: [AudioStreamTrack()]),
        configuration=LOCAL_CONFIGURATION,
    )
    callee = CallManager(
        RelayClient(relay_server.address, '10.0.0.3'),
        local_media=LocalMedia(lambda: [AudioStreamTrack()]),
        configuration=LOCAL_CONFIGURATION,
    )
    await caller.async_init()
    await callee.async_init()

    session = await caller.call('10.0.0.3')
    await session.ready(timeout=10)
    await wait_until(lambda: callee.status == 'connected', timeout=10)

    await caller.send_chat('10.0.0.3', 'hello')
    delivery = await asyncio.wait_for(caller.recv_event(), 5)
    assert isinstance(delivery, ChatDelivery)
    assert delivery.delivered
    chat = await asyncio.wait_for(callee.recv_event(), 5)
    assert isinstance(chat, ChatMessageRequest)
    assert chat.text == 'hello'
    assert chat.from_ip == '10.0.0.2'

    await caller.close()
    notice = await asyncio.wait_for(callee.recv_event(), 5)
    assert isinstance(notice, PeerDisconnected)
    assert notice.from_ip == '10.0.0.2'
    assert callee.session is None
    await callee.close()
