"""Bounded chat history kept by the relay server for each pair of peers."""
from __future__ import annotations

import collections
import dataclasses
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
"""Maximum number of chat messages kept per pair of addresses."""

PairKey = tuple[str, str]


def pair_key(address_a: str | None, address_b: str | None) -> PairKey | None:
    """Canonical key for the unordered pair of two addresses.

    Returns:
        The two addresses in lexicographic order so `(a, b)` and `(b, a)` \
        produce the same key, or `None` if either address is missing.
    """
    if not address_a or not address_b:
        return None
    if address_a <= address_b:
        return (address_a, address_b)
    return (address_b, address_a)


@dataclasses.dataclass(frozen=True)
class ChatMessage:
    """Chat message stored by the relay.

    Attributes:
        from_ip: Address of the author.
        target_ip: Address of the recipient.
        text: Message text.
        timestamp: Milliseconds since the Unix epoch as sent by the author or
            assigned by the relay.
    """

    from_ip: str
    target_ip: str
    text: str
    timestamp: int | float

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of the message."""
        return {
            'fromIP': self.from_ip,
            'targetIP': self.target_ip,
            'text': self.text,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        """Parse the wire representation of a message.

        Raises:
            KeyError: If a key is missing.
            TypeError: If `data` is not a dictionary.
        """
        if not isinstance(data, dict):
            raise TypeError(
                f'Chat message must be an object, got {type(data).__name__}.',
            )
        return cls(
            from_ip=data['fromIP'],
            target_ip=data['targetIP'],
            text=data['text'],
            timestamp=data['timestamp'],
        )


class ChatHistory:
    """Chat history for every pair of addresses.

    Each pair keeps at most `limit` messages in insertion order. Appending
    to a full history evicts the oldest message. Message timestamps never
    affect ordering.

    Note:
        Histories are mutated without locks. This is safe because all
        mutation happens synchronously inside the relay's asyncio handlers.

    Args:
        limit: Maximum number of messages kept per pair.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError(f'History limit must be positive, got {limit}.')
        self._limit = limit
        self._histories: dict[PairKey, collections.deque[ChatMessage]] = {}

    @property
    def limit(self) -> int:
        """Maximum number of messages kept per pair."""
        return self._limit

    def append(
        self,
        address_a: str | None,
        address_b: str | None,
        message: ChatMessage,
    ) -> None:
        """Append a message to the history of a pair.

        This is a no-op if either address is missing because the message
        cannot be attributed to a pair.
        """
        key = pair_key(address_a, address_b)
        if key is None:
            logger.debug('Chat message without a complete address pair')
            return
        history = self._histories.get(key)
        if history is None:
            history = collections.deque(maxlen=self._limit)
            self._histories[key] = history
        history.append(message)

    def get(
        self,
        address_a: str | None,
        address_b: str | None,
    ) -> list[ChatMessage]:
        """Get a snapshot of the history of a pair, oldest first."""
        key = pair_key(address_a, address_b)
        if key is None or key not in self._histories:
            return []
        return list(self._histories[key])

    def pairs(self) -> int:
        """Number of pairs with stored history."""
        return len(self._histories)
