"""Utilities related to the current execution environment."""
from __future__ import annotations

import socket

_LOOPBACK = '127.0.0.1'
# Never contacted, routing a datagram socket towards it only selects the
# outbound interface.
_PROBE_ADDRESS = ('10.255.255.255', 1)


def hostname() -> str:
    """Return current hostname."""
    return socket.gethostname()


def local_ip() -> str:
    """Return the local network IPv4 address of this host.

    The address of the interface used for outbound traffic is preferred.
    Otherwise, the first non-loopback address the hostname resolves to is
    used, and `#!python '127.0.0.1'` if neither is available.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(_PROBE_ADDRESS)
        address = s.getsockname()[0]
    except OSError:
        address = None
    finally:
        s.close()

    if address is not None and not address.startswith('127.'):
        return address

    try:
        _, _, addresses = socket.gethostbyname_ex(hostname())
    except OSError:
        return _LOOPBACK

    for address in addresses:
        if not address.startswith('127.'):
            return address
    return _LOOPBACK
