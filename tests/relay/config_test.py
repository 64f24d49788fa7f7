from __future__ import annotations

import logging
import pathlib

import pydantic
import pytest

from peerlink.relay.config import RelayLoggingConfig
from peerlink.relay.config import RelayServingConfig


def test_logging_config_default() -> None:
    config = RelayLoggingConfig()
    assert config.default_level == logging.INFO
    assert config.websockets_level == logging.WARNING


def test_serving_config_default() -> None:
    config = RelayServingConfig()
    assert config.host == '0.0.0.0'
    assert config.port == 3001
    assert config.server_ip is None
    assert config.history_limit == 100
    assert config.duplicate_addresses == 'fanout'


def test_read_from_config_file_empty(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('')

    config = RelayServingConfig.from_toml(filepath)
    assert config == RelayServingConfig()


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
host = "localhost"
port = 1234
server_ip = "192.168.1.20"
certfile = "/path/to/cert.pem"
keyfile = "/path/to/privkey.pem"
max_message_bytes = 4096
history_limit = 10
duplicate_addresses = "reject"

[logging]
log_dir = "/path/to/log/dir"
default_level = "DEBUG"
websockets_level = "INFO"
current_client_interval = 3
current_client_limit = 5
"""

    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write(data)

    config = RelayServingConfig.from_toml(filepath)

    assert config.host == 'localhost'
    assert config.port == 1234
    assert config.server_ip == '192.168.1.20'
    assert config.certfile == '/path/to/cert.pem'
    assert config.keyfile == '/path/to/privkey.pem'
    assert config.max_message_bytes == 4096
    assert config.history_limit == 10
    assert config.duplicate_addresses == 'reject'

    assert config.logging.log_dir == '/path/to/log/dir'
    assert config.logging.default_level == 'DEBUG'
    assert config.logging.websockets_level == 'INFO'
    assert config.logging.current_client_interval == 3
    assert config.logging.current_client_limit == 5


@pytest.mark.parametrize(
    'data',
    (
        'port = "3001"',
        'history_limit = 0',
        'duplicate_addresses = "drop"',
        'unknown_option = true',
        '[logging]\nunknown_option = true',
    ),
)
def test_read_invalid_config_file(tmp_path: pathlib.Path, data: str) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text(data)

    with pytest.raises(pydantic.ValidationError):
        RelayServingConfig.from_toml(filepath)


def test_write_config_file(tmp_path: pathlib.Path) -> None:
    config = RelayServingConfig(
        host='localhost',
        port=4000,
        server_ip='10.0.0.1',
        duplicate_addresses='reject',
        logging=RelayLoggingConfig(log_dir='/tmp/logs', default_level='DEBUG'),
    )
    filepath = tmp_path / 'relay.toml'

    config.to_toml(filepath)

    data = filepath.read_text()
    assert 'host = "localhost"' in data
    assert 'duplicate_addresses = "reject"' in data
    assert '[logging]' in data
    # Unset options are omitted rather than written as empty values
    assert 'certfile' not in data
    assert RelayServingConfig.from_toml(filepath) == config
