"""Relay server settings and their TOML representation."""
from __future__ import annotations

import logging
import pathlib
import sys
from typing import Literal

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

import tomli_w
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from peerlink.relay.history import DEFAULT_HISTORY_LIMIT


class RelayLoggingConfig(BaseModel):
    """Where and how much the relay logs.

    Attributes:
        log_dir: Directory for the weekly rotated `relay.log`. Only stdout
            is used if `None`.
        default_level: Root logger level.
        websockets_level: Level of the chatty `websockets` logger.
        current_client_interval: Seconds between reports of the connected
            clients. Disabled if `None`.
        current_client_limit: Connected clients are listed individually in
            reports only while there are fewer than this many. Never listed
            if `None`.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Settings of a relay server process.

    Attributes:
        host: Interface to listen on.
        port: Port to listen on.
        server_ip: Address sent to clients when they register and shown on
            the status page. The first non-loopback IPv4 address of the host
            is used if `None`.
        certfile: PEM certificate chain. Serves `wss://` when set.
        keyfile: PEM private key. Read from `certfile` if `None`.
        max_message_bytes: Frames larger than this close the connection with
            code 4003. Unlimited if `None`.
        history_limit: Chat messages kept per pair of peers.
        duplicate_addresses: What happens when a second connection registers
            an address already in use. `fanout` delivers to every connection
            with the address and `reject` refuses the new registration.
        logging: Logging settings.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = '0.0.0.0'
    port: int = 3001
    server_ip: str | None = None
    certfile: str | None = None
    keyfile: str | None = None
    max_message_bytes: int | None = None
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, gt=0)
    duplicate_addresses: Literal['fanout', 'reject'] = 'fanout'
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Read settings from a TOML file.

        Missing keys keep their defaults. Unknown keys and values of the
        wrong type are errors.

        Example:
            ```toml title="relay.toml"
            port = 3001
            server_ip = "192.168.1.20"
            certfile = "/etc/peerlink/cert.pem"
            keyfile = "/etc/peerlink/key.pem"
            duplicate_addresses = "reject"

            [logging]
            log_dir = "/var/log/peerlink"
            default_level = "INFO"
            current_client_interval = 300
            ```

            ```python
            from peerlink.relay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            ```

        Raises:
            pydantic.ValidationError: If the file has invalid settings.
        """
        with open(filepath, 'rb') as f:
            return cls.model_validate(tomllib.load(f), strict=True)

    def to_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the settings to a TOML file.

        Settings that are `None` are left out so they take their defaults
        when the file is read back with
        [`from_toml()`][peerlink.relay.config.RelayServingConfig.from_toml].
        """
        with open(filepath, 'wb') as f:
            tomli_w.dump(self.model_dump(exclude_none=True), f)
