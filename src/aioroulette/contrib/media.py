import asyncio
import logging
import os
import platform
from dataclasses import dataclass, field
from typing import Optional

import av
from aiortc.contrib.media import MediaPlayer

from ..configuration import AudioConstraints, MediaConstraints
from ..exceptions import MediaAcquisitionError
from ..mediastreams import MediaStream

logger = logging.getLogger(__name__)

VIDEO_OPTIONS = {"framerate": "30", "video_size": "640x480"}
SCREEN_OPTIONS = {"framerate": "30"}


@dataclass
class CaptureSource:
    """
    An input FFmpeg can capture from.
    """

    file: str
    "The device, display or file name."
    format: Optional[str] = None
    "The FFmpeg input format, or `None` to detect it."
    options: dict[str, str] = field(default_factory=dict)
    "Additional options to pass to FFmpeg."


def default_capture_sources() -> dict[str, CaptureSource]:
    """
    Return the camera, microphone and screen inputs of the current platform.
    """
    system = platform.system()
    if system == "Darwin":
        return {
            "camera": CaptureSource("default:none", "avfoundation"),
            "microphone": CaptureSource("none:default", "avfoundation"),
            "screen": CaptureSource("Capture screen 0:none", "avfoundation"),
        }
    elif system == "Windows":
        return {
            "camera": CaptureSource("video=Integrated Camera", "dshow"),
            "microphone": CaptureSource("audio=Microphone", "dshow"),
            "screen": CaptureSource("desktop", "gdigrab"),
        }
    else:
        return {
            "camera": CaptureSource("/dev/video0", "v4l2"),
            "microphone": CaptureSource("default", "pulse"),
            "screen": CaptureSource(os.environ.get("DISPLAY", ":0"), "x11grab"),
        }


def audio_options(constraints: AudioConstraints) -> dict[str, str]:
    """
    Translate audio constraints to FFmpeg capture options.

    Echo cancellation, noise suppression and automatic gain control are left
    to the audio server, FFmpeg inputs have no such processing.
    """
    options = {
        "sample_rate": str(constraints.sampleRate),
        "channels": str(constraints.channelCount),
    }
    if constraints.sampleSize == 16:
        options["sample_fmt"] = "s16"
    return options


class MediaDevices:
    """
    Gives access to the camera, the microphone and the screen.

    Each input defaults to the one :func:`default_capture_sources` returns.
    A single file may be used for both camera and microphone, in which case
    it is opened once.

    :param camera: The :class:`CaptureSource` for video.
    :param microphone: The :class:`CaptureSource` for audio.
    :param screen: The :class:`CaptureSource` for screen capture.
    """

    def __init__(
        self,
        camera: Optional[CaptureSource] = None,
        microphone: Optional[CaptureSource] = None,
        screen: Optional[CaptureSource] = None,
    ) -> None:
        defaults = default_capture_sources()
        self.camera = camera or defaults["camera"]
        self.microphone = microphone or defaults["microphone"]
        self.screen = screen or defaults["screen"]

    async def get_user_media(
        self, constraints: Optional[MediaConstraints] = None
    ) -> MediaStream:
        """
        Open the camera and the microphone.

        :param constraints: The :class:`MediaConstraints` to capture with.
        :raises MediaAcquisitionError: if an input cannot be opened or does
                                       not provide the expected media.
        """
        if constraints is None:
            constraints = MediaConstraints()

        camera_player = None
        players: list[MediaPlayer] = []
        tracks = []
        try:
            if constraints.video:
                camera_player = await self.__open(
                    self.camera, dict(VIDEO_OPTIONS, **self.camera.options)
                )
                players.append(camera_player)
                if camera_player.video is None:
                    raise MediaAcquisitionError(f"No video in {self.camera.file}")
                tracks.append(camera_player.video)

            if constraints.audio is not None:
                if camera_player is not None and self.microphone == self.camera:
                    microphone_player = camera_player
                else:
                    microphone_player = await self.__open(
                        self.microphone,
                        dict(audio_options(constraints.audio), **self.microphone.options),
                    )
                    players.append(microphone_player)
                if microphone_player.audio is None:
                    raise MediaAcquisitionError(f"No audio in {self.microphone.file}")
                tracks.append(microphone_player.audio)
        except MediaAcquisitionError:
            for player in players:
                _stop_player(player)
            raise

        return MediaStream(tracks)

    async def get_display_media(self) -> MediaStream:
        """
        Start capturing the screen.

        :raises MediaAcquisitionError: if the screen cannot be captured.
        """
        player = await self.__open(self.screen, dict(SCREEN_OPTIONS, **self.screen.options))
        if player.video is None:
            _stop_player(player)
            raise MediaAcquisitionError(f"No video in {self.screen.file}")
        return MediaStream([player.video])

    async def __open(self, source: CaptureSource, options: dict[str, str]) -> MediaPlayer:
        logger.debug("Opening %s (format %s)", source.file, source.format)
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(
                None,
                lambda: MediaPlayer(source.file, format=source.format, options=options),
            )
        except (av.FFmpegError, OSError) as exc:
            raise MediaAcquisitionError(f"Could not open {source.file}: {exc}") from exc


def _stop_player(player: MediaPlayer) -> None:
    # the player releases its container once all of its tracks are stopped
    for track in [player.audio, player.video]:
        if track is not None:
            track.stop()
