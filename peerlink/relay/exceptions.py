"""Errors raised by the relay server and relay clients."""
from __future__ import annotations


class RelayClientError(Exception):
    """Base class of relay client errors."""

    pass


class RelayNotConnectedError(RelayClientError):
    """The client has no open websocket to the relay."""

    pass


class RelayRegistrationError(RelayClientError):
    """The relay did not acknowledge the client registration."""

    pass


class RelayServerError(Exception):
    """Base class of relay server errors."""

    pass


class BadRequestError(RelayServerError):
    """A client message cannot be served.

    The relay answers it with an `error` envelope and keeps the connection.
    """

    pass


class DuplicateAddressError(BadRequestError):
    """Client registered an address already held by another connection."""

    pass
