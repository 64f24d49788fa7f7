"""PeerLink relays WebRTC signaling between peers on a local network."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peerlink')
