import argparse
import asyncio
import os
from typing import Optional

from discovery import DEFAULT_BOARD
from ota import (
    CONNECT_DELAY_SECONDS,
    DEFAULT_NAME,
    DEFAULT_PORT,
    OTAError,
    OTAReceiver,
    set_wire_trace,
)

COLOR_ENABLED = os.environ.get("NO_COLOR") is None
ANSI_RESET = "\x1b[0m"
ANSI_GREEN = "\x1b[92m"
ANSI_DARK_RED = "\x1b[31m"


def _paint(text: str, *styles: str) -> str:
    if not COLOR_ENABLED or not styles:
        return text
    return "".join(styles) + text + ANSI_RESET


class FirmwareWriter:
    """Streams received firmware into a file.

    Bytes go to "<path>.part" while the upload runs; the part file is
    renamed to <path> on success and removed on failure.
    """

    def __init__(self, path: str, receiver: Optional[OTAReceiver] = None):
        self.path = path
        self.part_path = path + ".part"
        self.receiver = receiver
        self.completed = 0
        self._out = None
        self._last_percent = 0

    def start(self, size: int) -> None:
        self.close()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._out = open(self.part_path, "wb")
        self._last_percent = 0
        session = self.receiver.session if self.receiver is not None else None
        if session is not None:
            print(
                f"[server] receiving {session.kind.name.lower()} image: {size} bytes "
                f"md5={session.content_digest} from {session.remote_address}"
            )
        else:
            print(f"[server] receiving {size} bytes")
        print(f"[server] progress   0% (0/{size})")

    def write(self, chunk_size: int, transferred: int, total: int, chunk: bytes) -> None:
        if self._out is None:
            return
        self._out.write(chunk)
        percent = transferred * 100 // total
        if percent // 10 != self._last_percent // 10:
            self._last_percent = percent
            print(f"[server] progress {percent:3d}% ({transferred}/{total})")

    def fail(self, err: OTAError) -> None:
        print(_paint(f"[server] upload failed: {err}", ANSI_DARK_RED))
        self.close()
        if os.path.exists(self.part_path):
            os.remove(self.part_path)

    def finish(self) -> None:
        self.close()
        os.replace(self.part_path, self.path)
        self.completed += 1
        print(_paint(f"[server] firmware saved -> {self.path}", ANSI_GREEN))

    def close(self) -> None:
        if self._out is not None:
            self._out.close()
            self._out = None


# Runs the receiver until interrupted, or until the first upload with --once
async def serve(args: argparse.Namespace) -> None:
    receiver = OTAReceiver(
        name=args.name,
        port=args.port,
        password=args.password or None,
        password_is_md5=args.password_md5,
        host=args.host,
        connect_delay=args.connect_delay,
        board=args.board,
        advertise=not args.no_mdns,
        verbose=args.verbose,
    )
    writer = FirmwareWriter(args.output, receiver)
    done = asyncio.Event()

    def on_end() -> None:
        writer.finish()
        if args.once:
            done.set()

    receiver.on_start(writer.start).on_progress(writer.write).on_error(writer.fail).on_end(on_end)

    try:
        await receiver.start()
        print(f"[server] listening on {args.host}:{receiver.port} as {args.name!r}")
        await done.wait()
    finally:
        await receiver.shutdown()
        writer.close()


# Runs the CLI entrypoint
def main() -> None:
    parser = argparse.ArgumentParser(description="ArduinoOTA receiver that saves uploaded firmware to disk")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--name", default=DEFAULT_NAME, help="Name advertised over mDNS")
    parser.add_argument("--board", default=DEFAULT_BOARD, help="Board value in the mDNS TXT record")
    parser.add_argument("--password", default="", help="Require uploaders to authenticate with this password")
    parser.add_argument("--password-md5", action="store_true", help="--password is already an MD5 hex digest")
    parser.add_argument("--output", default="firmware.bin", help="Where the received image is written")
    parser.add_argument(
        "--connect-delay",
        type=float,
        default=CONNECT_DELAY_SECONDS,
        help="Seconds to wait after the UDP OK before dialing the uploader",
    )
    parser.add_argument("--no-mdns", action="store_true", help="Do not publish the mDNS service record")
    parser.add_argument("--once", action="store_true", help="Exit after the first completed upload")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    set_wire_trace(args.verbose, "SERVER")

    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        print("\n[server] stopped by user")
    except OSError as exc:
        print(_paint(f"[server] network error: {exc}", ANSI_DARK_RED))


if __name__ == "__main__":
    main()
