"""Relay server and client implementations.

The relay server forwards session offers, answers, ICE candidates, and chat
messages between peers identified by their local network address.
"""
from __future__ import annotations
