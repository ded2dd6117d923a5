import argparse
import asyncio
import logging
import sys
from typing import Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from aioroulette import (
    MediaStream,
    RouletteConfiguration,
    SessionController,
)
from aioroulette.contrib.media import CaptureSource, MediaDevices
from aioroulette.contrib.signaling import add_signaling_arguments, create_signaling

HELP = "Commands: skip, screen, quit"


class RemoteSink:
    """
    Writes the media of the current partner, one recorder per partner.
    """

    def __init__(self, record_to: Optional[str]) -> None:
        self.count = 0
        self.record_to = record_to
        self.recorder: Optional[MediaBlackhole] = None

    async def replace(self, stream: Optional[MediaStream]) -> None:
        if self.recorder is not None:
            await self.recorder.stop()
            self.recorder = None
        if stream is None:
            return

        if self.record_to:
            self.count += 1
            recorder = MediaRecorder(self.record_to.format(partner=self.count))
        else:
            recorder = MediaBlackhole()
        for track in stream.getTracks():
            recorder.addTrack(track)
        await recorder.start()
        self.recorder = recorder


async def read_commands(controller: SessionController) -> None:
    loop = asyncio.get_event_loop()
    print(HELP)
    while controller.state == "running":
        line = await loop.run_in_executor(None, sys.stdin.readline)
        command = line.strip()
        if not line or command == "quit":
            break
        elif command == "skip":
            await controller.skip()
        elif command == "screen":
            sharing = await controller.toggle_screen_share()
            print("Sharing screen" if sharing else "Sharing camera")
        elif command:
            print(HELP)


async def run(controller: SessionController, sink: RemoteSink) -> None:
    pending: set[asyncio.Task] = set()

    @controller.on("partnerchange")
    def on_partnerchange(remote_id: Optional[str]) -> None:
        if remote_id is None:
            print("Waiting for a partner")
        else:
            print(f"Talking to {remote_id}")

    @controller.on("remotestream")
    def on_remotestream(stream: Optional[MediaStream]) -> None:
        task = asyncio.ensure_future(sink.replace(stream))
        pending.add(task)
        task.add_done_callback(pending.discard)

    @controller.on("error")
    def on_error(exc: Exception) -> None:
        print(f"Error: {exc}")

    await controller.start()
    if controller.state != "running":
        return

    await read_commands(controller)
    await controller.exit()
    await asyncio.gather(*pending)
    await sink.replace(None)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Video roulette from the command line")
    parser.add_argument("--play-from", help="Read the media from a file and send it.")
    parser.add_argument(
        "--record-to",
        help="Write received media to a file, {partner} is replaced by a counter.",
    )
    parser.add_argument(
        "--audio-bitrate",
        type=int,
        default=128000,
        help="Maximum audio bitrate in bits per second.",
    )
    parser.add_argument("--verbose", "-v", action="count")
    add_signaling_arguments(parser)
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    if args.play_from:
        source = CaptureSource(args.play_from)
        media_devices = MediaDevices(camera=source, microphone=source)
    else:
        media_devices = MediaDevices()

    controller = SessionController(
        create_signaling(args),
        media_devices,
        RouletteConfiguration(audioMaxBitrate=args.audio_bitrate),
    )

    try:
        asyncio.run(run(controller, RemoteSink(args.record_to)))
    except KeyboardInterrupt:
        pass
