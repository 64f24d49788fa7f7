"""Registry of websocket connections registered with a relay server."""
from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Iterator

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from peerlink.relay.exceptions import DuplicateAddressError
from peerlink.utils.timestamps import epoch_ms


class DuplicatePolicy(enum.Enum):
    """Handling of several connections registering the same address."""

    fanout = 'fanout'
    """Accept every registration and route to all of them."""
    reject = 'reject'
    """Refuse to register an address held by another open connection."""


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Connection:
    """Registered websocket connection.

    Attributes:
        session_id: Client chosen or server assigned session id.
        address: Self-reported local network address. Not verified.
        websocket: Websocket connection to the client.
        ready: Readiness flag. Not used for routing.
        created: Time the registration was made.
    """

    session_id: str
    address: str | None
    websocket: ServerConnection
    ready: bool = False
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        remote = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(session_id={self.session_id}, '
            f'address={self.address}, remote={remote}, created={created})'
        )


def is_open(websocket: ServerConnection) -> bool:
    """Check if the websocket can still be written to."""
    return websocket.state is State.OPEN


class ConnectionRegistry:
    """Maps websocket connections to their declared identity.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][peerlink.relay.server.RelayServer].

    Args:
        duplicate_policy: Handling of registrations for an address already
            held by another open connection.
    """

    def __init__(
        self,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.fanout,
    ) -> None:
        self._duplicate_policy = duplicate_policy
        self._connections: dict[ServerConnection, Connection] = {}
        # Every accepted websocket, registered or not, for broadcasts
        self._websockets: set[ServerConnection] = set()

    @property
    def duplicate_policy(self) -> DuplicatePolicy:
        """Policy for duplicate address registrations."""
        return self._duplicate_policy

    def track(self, websocket: ServerConnection) -> None:
        """Start tracking an accepted websocket for broadcasts."""
        self._websockets.add(websocket)

    def untrack(self, websocket: ServerConnection) -> None:
        """Stop tracking a websocket and drop its registration."""
        self._websockets.discard(websocket)
        self.remove(websocket)

    def register(
        self,
        websocket: ServerConnection,
        address: str | None,
        session_id: str | None = None,
    ) -> Connection:
        """Store or overwrite the registration of a websocket.

        Args:
            websocket: Websocket connection to register.
            address: Declared local network address.
            session_id: Client chosen session id. One is assigned if `None`.

        Returns:
            The stored connection record.

        Raises:
            DuplicateAddressError: If the policy is
                [`reject`][peerlink.relay.registry.DuplicatePolicy.reject]
                and another open websocket registered `address`.
        """
        if (
            self._duplicate_policy is DuplicatePolicy.reject
            and address
            and any(
                is_open(c.websocket)
                for c in self.lookup_by_address(address, exclude=websocket)
            )
        ):
            raise DuplicateAddressError(
                f'The address {address} is already registered by another '
                'connection.',
            )

        connection = Connection(
            session_id=session_id or str(epoch_ms()),
            address=address,
            websocket=websocket,
        )
        self._websockets.add(websocket)
        self._connections[websocket] = connection
        return connection

    def get(self, websocket: ServerConnection) -> Connection | None:
        """Get the registration of a websocket."""
        return self._connections.get(websocket, None)

    def get_connections(self) -> list[Connection]:
        """Get a list of all registered connections."""
        return list(self._connections.values())

    def lookup_by_address(
        self,
        address: str,
        exclude: ServerConnection | None = None,
    ) -> list[Connection]:
        """Get all connections registered with an address.

        Args:
            address: Declared address to match.
            exclude: Websocket to leave out, typically the sender.
        """
        return [
            c
            for c in self._connections.values()
            if c.address == address and c.websocket is not exclude
        ]

    def open_websockets(
        self,
        exclude: ServerConnection | None = None,
    ) -> Iterator[ServerConnection]:
        """Iterate over every open websocket except `exclude`."""
        for websocket in list(self._websockets):
            if websocket is not exclude and is_open(websocket):
                yield websocket

    def remove(self, websocket: ServerConnection) -> Connection | None:
        """Remove the registration of a websocket if it exists."""
        return self._connections.pop(websocket, None)
