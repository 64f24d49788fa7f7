"""Command line entry point and serving loop for the relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websocket_serve

from peerlink.relay.config import RelayLoggingConfig
from peerlink.relay.config import RelayServingConfig
from peerlink.relay.history import ChatHistory
from peerlink.relay.registry import ConnectionRegistry
from peerlink.relay.registry import DuplicatePolicy
from peerlink.relay.server import RelayServer
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE = 'relay.log'


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Start a task that periodically logs who is registered.

    Each report has the number of open connections and of stored chat
    histories. The connections are listed one per line when there are
    fewer than `limit` of them.

    Args:
        server: Relay server to report on.
        interval: Seconds between reports.
        limit: Connection count below which connections are listed. Never
            listed if `None`.
        level: Logging level of the reports.

    Returns:
        Asyncio task running the reports. Cancel it to stop reporting.
    """

    async def _report() -> None:
        while True:
            await asyncio.sleep(interval)
            connections = sorted(
                server.registry.get_connections(),
                key=lambda c: c.address or '',
            )
            lines = [
                f'Connected clients: {len(connections)}, '
                f'chat histories: {server.history.pairs()}',
            ]
            if limit is not None and 0 < len(connections) < limit:
                lines.extend(repr(c) for c in connections)
            logger.log(level, '\n'.join(lines))

    return spawn_guarded_background_task(
        _report,
        task_name='relay-server-client-logger',
    )


def create_server(config: RelayServingConfig) -> RelayServer:
    """Create a relay server from a serving configuration."""
    registry = ConnectionRegistry(
        DuplicatePolicy(config.duplicate_addresses),
    )
    return RelayServer(
        registry,
        ChatHistory(config.history_limit),
        server_ip=config.server_ip,
        max_message_bytes=config.max_message_bytes,
    )


def _server_ssl_context(config: RelayServingConfig) -> ssl.SSLContext | None:
    if config.certfile is None:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    return context


def _level_number(level: int | str) -> int:
    return level if isinstance(level, int) else logging.getLevelName(level)


async def _stop_task(task: asyncio.Task[None]) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server until SIGINT or SIGTERM.

    Builds a [`RelayServer`][peerlink.relay.server.RelayServer] with
    [`create_server()`][peerlink.relay.run.create_server] and serves it on
    `config.host` and `config.port`, over TLS when `config.certfile` is set.
    Websocket upgrades go to the signaling handler and plain HTTP requests
    for `/` get the relay status page.

    Note:
        Logging is not configured here. Use
        [`configure_logging()`][peerlink.relay.run.configure_logging] or
        configure it in the caller.

    Args:
        config: Serving configuration.
    """
    server = create_server(config)

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    stop_signals = (signal.SIGINT, signal.SIGTERM)
    for signum in stop_signals:
        loop.add_signal_handler(signum, stop.set_result, None)

    reporter: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:
        reporter = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=_level_number(config.logging.default_level),
        )

    logger.info(
        f'Relay serving configuration:\n{pprint.pformat(config, indent=2)}',
    )

    try:
        async with websocket_serve(
            server.handler,
            config.host,
            config.port,
            ssl=_server_ssl_context(config),
            process_request=server.process_request,
        ):
            scheme = 'wss' if config.certfile is not None else 'ws'
            logger.info(
                f'Relay server listening on port {config.port}, clients '
                f'connect to {scheme}://{server.server_ip}:{config.port} '
                '(ctrl-C to stop)',
            )
            await stop
    finally:
        if reporter is not None:
            await _stop_task(reporter)
        for signum in stop_signals:
            loop.remove_signal_handler(signum)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayLoggingConfig) -> None:
    """Send relay logs to stdout and, with a log directory, to a file.

    The file in `config.log_dir` is rotated weekly.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, LOG_FILE),
                # W6 is Sunday
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=config.default_level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(config.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='TOML configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to listen on.')
@click.option('--port', type=int, metavar='PORT', help='Port to listen on.')
@click.option(
    '--server-ip',
    metavar='ADDR',
    help='Address reported to clients (detected if omitted).',
)
@click.option('--log-dir', metavar='PATH', help='Directory for relay.log.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.option(
    '--write-config',
    metavar='PATH',
    help='Write the resolved configuration to PATH and exit.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    server_ip: str | None,
    log_dir: str | None,
    log_level: str | None,
    write_config: str | None,
) -> None:
    """Run the PeerLink signaling relay.

    Peers on the local network register with the relay by address and use
    it to exchange WebRTC offers, answers, ICE candidates, and chat
    messages. Options given on the command line take precedence over the
    configuration file, which defaults to
    [`RelayServingConfig()`][peerlink.relay.config.RelayServingConfig].
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    overrides = {'host': host, 'port': port, 'server_ip': server_ip}
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    if write_config is not None:
        config.to_toml(write_config)
        click.echo(f'Wrote relay configuration to {write_config}')
        return

    configure_logging(config.logging)
    asyncio.run(serve(config))
