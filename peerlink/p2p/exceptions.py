"""Exception types for peering errors."""
from __future__ import annotations


class PeerConnectionError(Exception):
    """Error connecting to peer."""

    pass


class NegotiationError(PeerConnectionError):
    """Signaling message is not valid in the current negotiation state."""

    pass


class CallInProgressError(PeerConnectionError):
    """A call was requested while another call is still active."""

    pass


class PeerConnectionTimeoutError(PeerConnectionError):
    """Timeout waiting on peer to peer connection to establish."""

    pass
