"""Local media tracks shared by successive calls."""
from __future__ import annotations

import inspect
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Iterable
from typing import Union

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

logger = logging.getLogger(__name__)

TrackFactory = Callable[
    [],
    Union[Iterable[MediaStreamTrack], Awaitable[Iterable[MediaStreamTrack]]],
]


class LocalMedia:
    """Local audio and video tracks sent to peers.

    Tracks are created once by the factory on the first call to
    [`acquire()`][peerlink.p2p.media.LocalMedia.acquire] and are reused by
    every later call. Ending a call does not stop the tracks so the camera
    and microphone stay live for the next call; only
    [`stop()`][peerlink.p2p.media.LocalMedia.stop] releases them.

    Args:
        factory: Callable returning the local tracks (or an awaitable of
            them). If `None`, no media is sent and calls only receive.
    """

    def __init__(self, factory: TrackFactory | None = None) -> None:
        self._factory = factory
        self._tracks: list[MediaStreamTrack] = []
        self._acquired = False

    @property
    def acquired(self) -> bool:
        """If the local tracks have been created."""
        return self._acquired

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        """Acquired local tracks."""
        return list(self._tracks)

    async def acquire(self) -> list[MediaStreamTrack]:
        """Create the local tracks if they do not exist yet.

        Returns:
            The local tracks.
        """
        if self._acquired:
            return self.tracks

        if self._factory is not None:
            result = self._factory()
            if inspect.isawaitable(result):
                result = await result
            self._tracks = [track for track in result if track is not None]

        self._acquired = True
        logger.info(
            f'Acquired local media: '
            f'{", ".join(t.kind for t in self._tracks) or "none"}',
        )
        return self.tracks

    def stop(self) -> None:
        """Stop and release all local tracks."""
        for track in self._tracks:
            track.stop()
        if self._tracks:
            logger.info('Stopped local media')
        self._tracks = []
        self._acquired = False


def player_factory(
    file: str,
    format: str | None = None,  # noqa: A002
    options: dict[str, Any] | None = None,
) -> TrackFactory:
    """Create a track factory reading from a device or file.

    Example:
        Webcam and microphone on Linux.
        ```python
        media = LocalMedia(player_factory('/dev/video0', format='v4l2'))
        ```

    Args:
        file: Device or file path passed to
            [`MediaPlayer`][aiortc.contrib.media.MediaPlayer].
        format: Optional input format (e.g. `v4l2`, `avfoundation`).
        options: Optional input options (e.g. `{'video_size': '1280x720'}`).
    """

    def _create() -> list[MediaStreamTrack]:
        player = MediaPlayer(file, format=format, options=options or {})
        return [
            track
            for track in (player.audio, player.video)
            if track is not None
        ]

    return _create
