"""Signaling envelopes exchanged between peers and the relay server.

Envelopes are JSON objects with a `type` key. Each known type maps to a
dataclass below whose attributes map onto the camelCase keys browsers use
on the wire (e.g., `target_ip` is sent as `targetIP`). Keys a dataclass does
not declare are kept in `extra` so the relay forwards envelopes verbatim.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar

from peerlink.relay.history import ChatMessage


class MessageType(enum.Enum):
    """Envelope types understood by the relay server and clients."""

    register = 'register'
    """Client registration with its local network address."""
    registered = 'registered'
    """Registration acknowledgement sent by the relay."""
    offer = 'offer'
    """Session description offer."""
    answer = 'answer'
    """Session description answer."""
    ice_candidate = 'ice-candidate'
    """ICE connectivity candidate."""
    chat_message = 'chat-message'
    """Chat text sent to a peer."""
    chat_delivery = 'chat-delivery'
    """Delivery report for a chat message sent back to its author."""
    request_chat_history = 'request-chat-history'
    """Request for the stored chat history with a peer."""
    chat_history = 'chat-history'
    """Stored chat history with a peer."""
    disconnect = 'disconnect'
    """Client is leaving the relay."""
    peer_disconnected = 'peer-disconnected'
    """Notice that another client left the relay."""
    call_rejected = 'call-rejected'
    """Callee is busy with another call."""
    error = 'error'
    """Error reported by the relay."""


class MessageError(Exception):
    """Base exception type for signaling messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def _field(
    wire: str,
    kind: type | tuple[type, ...] | None = str,
    default: Any = None,
) -> Any:
    return dataclasses.field(
        default=default,
        metadata={'wire': wire, 'kind': kind},
    )


@dataclasses.dataclass
class SignalingMessage:
    """Base message.

    Attributes:
        extra: Keys received on the wire that this message type does not
            declare. They are written back when the message is encoded.
    """

    message_type: ClassVar[str] = ''

    extra: dict[str, Any] = dataclasses.field(
        default_factory=dict,
        kw_only=True,
        repr=False,
    )

    @property
    def type(self) -> str:
        """Value of the `type` key on the wire."""
        return self.message_type


@dataclasses.dataclass
class RegisterRequest(SignalingMessage):
    """Register a connection with the relay server.

    Attributes:
        local_ip: Self-reported local network address of the client.
        id: Optional client chosen session id.
    """

    message_type: ClassVar[str] = MessageType.register.value

    local_ip: str | None = _field('localIP')
    id: str | None = _field('id')


@dataclasses.dataclass
class RegisteredResponse(SignalingMessage):
    """Registration acknowledgement.

    Attributes:
        server_ip: Local network address of the relay server.
        id: Session id the relay stored for the connection.
    """

    message_type: ClassVar[str] = MessageType.registered.value

    server_ip: str | None = _field('serverIP')
    id: str | None = _field('id')


@dataclasses.dataclass
class SessionOffer(SignalingMessage):
    """Session description offer.

    Attributes:
        offer: Session description, usually
            `#!python {'type': ..., 'sdp': ...}`. Relayed as is.
        target_ip: Address of the peer to forward the offer to.
        from_ip: Address of the sender, stamped by the relay.
    """

    message_type: ClassVar[str] = MessageType.offer.value

    offer: Any = _field('offer', None)
    target_ip: str | None = _field('targetIP')
    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class SessionAnswer(SignalingMessage):
    """Session description answer.

    Attributes:
        answer: Session description, usually
            `#!python {'type': ..., 'sdp': ...}`. Relayed as is.
        target_ip: Address of the peer to forward the answer to.
        from_ip: Address of the sender, stamped by the relay.
    """

    message_type: ClassVar[str] = MessageType.answer.value

    answer: Any = _field('answer', None)
    target_ip: str | None = _field('targetIP')
    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class IceCandidateMessage(SignalingMessage):
    """ICE candidate generated by one peer for the other.

    Attributes:
        candidate: Candidate, usually in the browser `RTCIceCandidateInit`
            shape. Relayed as is.
        target_ip: Address of the peer to forward the candidate to.
        from_ip: Address of the sender, stamped by the relay.
    """

    message_type: ClassVar[str] = MessageType.ice_candidate.value

    candidate: Any = _field('candidate', None)
    target_ip: str | None = _field('targetIP')
    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class ChatMessageRequest(SignalingMessage):
    """Chat text addressed to a peer."""

    message_type: ClassVar[str] = MessageType.chat_message.value

    target_ip: str | None = _field('targetIP')
    text: str | None = _field('text')
    timestamp: int | float | None = _field('timestamp', (int, float))
    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class ChatDelivery(SignalingMessage):
    """Delivery report returned to the author of a chat message.

    Attributes:
        to_ip: Address the chat message was addressed to.
        delivered: If at least one connection with that address received it.
        timestamp: Timestamp of the chat message.
    """

    message_type: ClassVar[str] = MessageType.chat_delivery.value

    to_ip: str | None = _field('toIP')
    delivered: bool = _field('delivered', bool, False)
    timestamp: int | float | None = _field('timestamp', (int, float))


@dataclasses.dataclass
class ChatHistoryRequest(SignalingMessage):
    """Request the chat history between the sender and a peer."""

    message_type: ClassVar[str] = MessageType.request_chat_history.value

    peer_ip: str | None = _field('peerIP')


@dataclasses.dataclass
class ChatHistoryResponse(SignalingMessage):
    """Chat history between the requester and a peer, oldest first."""

    message_type: ClassVar[str] = MessageType.chat_history.value

    peer_ip: str | None = _field('peerIP')
    messages: list[ChatMessage] = dataclasses.field(
        default_factory=list,
        metadata={'wire': 'messages', 'kind': list},
    )

    def __post_init__(self) -> None:
        self.messages = [
            m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m)
            for m in self.messages
        ]


@dataclasses.dataclass
class DisconnectRequest(SignalingMessage):
    """Client is leaving the relay."""

    message_type: ClassVar[str] = MessageType.disconnect.value


@dataclasses.dataclass
class PeerDisconnected(SignalingMessage):
    """Another client left the relay."""

    message_type: ClassVar[str] = MessageType.peer_disconnected.value

    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class CallRejected(SignalingMessage):
    """Callee declined an offer because another call is active."""

    message_type: ClassVar[str] = MessageType.call_rejected.value

    target_ip: str | None = _field('targetIP')
    reason: str | None = _field('reason')
    from_ip: str | None = _field('fromIP')


@dataclasses.dataclass
class RelayError(SignalingMessage):
    """Error reported to a client by the relay server."""

    message_type: ClassVar[str] = MessageType.error.value

    message: str | None = _field('message')
    code: str | None = _field('code')


@dataclasses.dataclass
class UnknownMessage(SignalingMessage):
    """Envelope of a type the relay does not interpret.

    All keys other than `type` are kept in `extra`.

    Attributes:
        name: Value of the `type` key.
    """

    name: str = ''

    @property
    def type(self) -> str:
        """Value of the `type` key on the wire."""
        return self.name


_MESSAGE_TYPES: dict[str, type[SignalingMessage]] = {
    cls.message_type: cls
    for cls in (
        RegisterRequest,
        RegisteredResponse,
        SessionOffer,
        SessionAnswer,
        IceCandidateMessage,
        ChatMessageRequest,
        ChatDelivery,
        ChatHistoryRequest,
        ChatHistoryResponse,
        DisconnectRequest,
        PeerDisconnected,
        CallRejected,
        RelayError,
    )
}


def _wire_fields(
    cls: type[SignalingMessage],
) -> list[dataclasses.Field[Any]]:
    return [f for f in dataclasses.fields(cls) if 'wire' in f.metadata]


def _check_kind(key: str, value: Any, kind: Any) -> None:
    if value is None or kind is None:
        return
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool is a subclass of int but a boolean timestamp is still malformed
    if isinstance(value, bool) and bool not in kinds:
        raise MessageDecodeError(
            f'Key {key} has invalid type {type(value).__name__}.',
        )
    if not isinstance(value, kinds):
        raise MessageDecodeError(
            f'Key {key} has invalid type {type(value).__name__}.',
        )


def _to_wire(value: Any) -> Any:
    if isinstance(value, ChatMessage):
        return value.to_dict()
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


def decode_message(message: str) -> SignalingMessage:
    """Decode JSON string into correct signaling message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message. Envelopes with an unrecognized `type` are returned
        as [`UnknownMessage`][peerlink.relay.messages.UnknownMessage].

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        type_name = data.pop('type')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a type key.',
        ) from e

    if not isinstance(type_name, str):
        raise MessageDecodeError('Message type must be a string.')

    message_type = _MESSAGE_TYPES.get(type_name)
    if message_type is None:
        return UnknownMessage(name=type_name, extra=data)

    kwargs: dict[str, Any] = {}
    for field in _wire_fields(message_type):
        key = field.metadata['wire']
        if key in data:
            value = data.pop(key)
            _check_kind(key, value, field.metadata['kind'])
            kwargs[field.name] = value

    try:
        return message_type(**kwargs, extra=data)
    except (KeyError, TypeError, ValueError) as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def message_to_dict(message: SignalingMessage) -> dict[str, Any]:
    """Convert a message into the JSON object sent on the wire.

    Unset optional keys are omitted.

    Raises:
        MessageEncodeError: If `message` is not a signaling message.
    """
    if not isinstance(message, SignalingMessage):
        raise MessageEncodeError(
            f'Message is not an instance of {SignalingMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dict(message.extra)
    data['type'] = message.type
    for field in _wire_fields(type(message)):
        value = getattr(message, field.name)
        if value is not None:
            data[field.metadata['wire']] = _to_wire(value)
    return data


def encode_message(message: SignalingMessage) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    data = message_to_dict(message)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e
