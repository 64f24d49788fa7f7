from __future__ import annotations

import json
from typing import Any

import pytest

from peerlink.relay.history import ChatMessage
from peerlink.relay.messages import CallRejected
from peerlink.relay.messages import ChatDelivery
from peerlink.relay.messages import ChatHistoryResponse
from peerlink.relay.messages import ChatMessageRequest
from peerlink.relay.messages import decode_message
from peerlink.relay.messages import DisconnectRequest
from peerlink.relay.messages import encode_message
from peerlink.relay.messages import IceCandidateMessage
from peerlink.relay.messages import message_to_dict
from peerlink.relay.messages import MessageDecodeError
from peerlink.relay.messages import MessageEncodeError
from peerlink.relay.messages import MessageType
from peerlink.relay.messages import PeerDisconnected
from peerlink.relay.messages import RegisteredResponse
from peerlink.relay.messages import RegisterRequest
from peerlink.relay.messages import RelayError
from peerlink.relay.messages import SessionAnswer
from peerlink.relay.messages import SessionOffer
from peerlink.relay.messages import UnknownMessage

_OFFER = {'type': 'offer', 'sdp': 'v=0\r\n'}


@pytest.mark.parametrize(
    'message',
    (
        RegisterRequest(local_ip='10.0.0.2'),
        RegisterRequest(local_ip='10.0.0.2', id='abc'),
        RegisteredResponse(server_ip='10.0.0.1', id='123'),
        SessionOffer(offer=_OFFER, target_ip='10.0.0.3', from_ip='10.0.0.2'),
        SessionAnswer(answer=_OFFER, target_ip='10.0.0.2'),
        IceCandidateMessage(
            candidate={'candidate': 'c', 'sdpMid': '0', 'sdpMLineIndex': 0},
            target_ip='10.0.0.3',
        ),
        ChatMessageRequest(target_ip='10.0.0.3', text='hi', timestamp=1),
        ChatDelivery(to_ip='10.0.0.3', delivered=True, timestamp=1),
        ChatHistoryResponse(
            peer_ip='10.0.0.3',
            messages=[ChatMessage('10.0.0.2', '10.0.0.3', 'hi', 1)],
        ),
        DisconnectRequest(),
        PeerDisconnected(from_ip='10.0.0.2'),
        CallRejected(target_ip='10.0.0.2', reason='busy'),
        RelayError(message='bad', code='bad-request'),
    ),
)
def test_encode_decode(message: Any) -> None:
    assert decode_message(encode_message(message)) == message


def test_wire_keys_are_camel_case() -> None:
    message = SessionOffer(offer=_OFFER, target_ip='10.0.0.3')
    data = json.loads(encode_message(message))
    assert data == {'type': 'offer', 'offer': _OFFER, 'targetIP': '10.0.0.3'}


def test_unset_keys_are_omitted() -> None:
    data = message_to_dict(RegisterRequest(local_ip='10.0.0.2'))
    assert data == {'type': 'register', 'localIP': '10.0.0.2'}


def test_message_type_property() -> None:
    assert DisconnectRequest().type == MessageType.disconnect.value
    assert ChatDelivery().type == 'chat-delivery'
    assert UnknownMessage(name='custom').type == 'custom'


def test_unknown_keys_are_preserved() -> None:
    raw = {
        'type': 'ice-candidate',
        'targetIP': '10.0.0.3',
        'candidate': {'candidate': ''},
        'custom': [1, 2],
    }
    message = decode_message(json.dumps(raw))
    assert isinstance(message, IceCandidateMessage)
    assert message.extra == {'custom': [1, 2]}
    assert json.loads(encode_message(message)) == raw


def test_opaque_payloads_are_not_type_checked() -> None:
    raw = {
        'type': 'offer',
        'targetIP': '10.0.0.3',
        'offer': 'v=0\r\n',
    }
    message = decode_message(json.dumps(raw))
    assert isinstance(message, SessionOffer)
    assert message.offer == 'v=0\r\n'
    assert json.loads(encode_message(message)) == raw

    candidate = decode_message(
        '{"type": "ice-candidate", "candidate": "candidate:1 1 udp"}',
    )
    assert isinstance(candidate, IceCandidateMessage)
    assert candidate.candidate == 'candidate:1 1 udp'


def test_fractional_timestamp_accepted() -> None:
    message = decode_message(
        '{"type": "chat-message", "text": "hi", "timestamp": 1.5e12}',
    )
    assert isinstance(message, ChatMessageRequest)
    assert message.timestamp == 1.5e12


def test_unknown_type_is_kept_verbatim() -> None:
    raw = {'type': 'typing', 'targetIP': '10.0.0.3', 'active': True}
    message = decode_message(json.dumps(raw))
    assert isinstance(message, UnknownMessage)
    assert message.name == 'typing'
    assert message.extra == {'targetIP': '10.0.0.3', 'active': True}
    assert json.loads(encode_message(message)) == raw


def test_chat_history_messages_are_parsed() -> None:
    raw = {
        'type': 'chat-history',
        'peerIP': '10.0.0.3',
        'messages': [
            {
                'fromIP': '10.0.0.2',
                'targetIP': '10.0.0.3',
                'text': 'hi',
                'timestamp': 5,
            },
        ],
    }
    message = decode_message(json.dumps(raw))
    assert isinstance(message, ChatHistoryResponse)
    assert message.messages == [ChatMessage('10.0.0.2', '10.0.0.3', 'hi', 5)]


@pytest.mark.parametrize(
    'raw',
    (
        'not json',
        '[1, 2, 3]',
        '"offer"',
        '{"targetIP": "10.0.0.3"}',
        '{"type": 1}',
        '{"type": "offer", "targetIP": 5}',
        '{"type": "chat-message", "timestamp": "now"}',
        '{"type": "chat-message", "timestamp": true}',
        '{"type": "chat-delivery", "delivered": "yes"}',
        '{"type": "chat-history", "messages": [{"text": "hi"}]}',
        '{"type": "chat-history", "messages": ["hi"]}',
    ),
)
def test_decode_malformed(raw: str) -> None:
    with pytest.raises(MessageDecodeError):
        decode_message(raw)


def test_encode_non_message() -> None:
    with pytest.raises(MessageEncodeError, match='not an instance'):
        encode_message('message')  # type: ignore[arg-type]


def test_encode_unserializable() -> None:
    message = SessionOffer(offer={'sdp': object()}, target_ip='10.0.0.3')
    with pytest.raises(MessageEncodeError):
        encode_message(message)
