"""Utility modules shared by the relay server and clients."""
from __future__ import annotations
