"""Peer-to-peer media calls.

This module provides the endpoint side of a call.

* The [`PeerSession`][peerlink.p2p.connection.PeerSession] negotiates a
  WebRTC session with one peer using
  [aiortc](https://aiortc.readthedocs.io/){target=_blank}, an asyncio WebRTC
  implementation.
* The [`CallManager`][peerlink.p2p.manager.CallManager] listens to the relay
  server, answers incoming calls, and exposes chat traffic.
"""
from __future__ import annotations
