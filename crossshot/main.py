"""CLI entry point: ``crossshot-collector [--host H] [--port P] [--storage-dir DIR]``."""
from __future__ import annotations

import argparse
import logging
import socket
from pathlib import Path

import uvicorn

from . import __version__
from .config import load_settings
from .server import PROXY_STREAM_PATH, create_app

# Room for the JSON header line on top of the payload cap.
_WS_FRAME_OVERHEAD = 64 * 1024


def lan_address() -> str:
    """Best-effort LAN IPv4 address that phones on the same network can reach."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packets are sent; connect() only selects the outbound interface.
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        address = "127.0.0.1"
    finally:
        sock.close()
    return address


def main() -> None:
    parser = argparse.ArgumentParser(
        description="CrossShot collector: receives screenshots from phones on the LAN",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument("--storage-dir", type=str, default=None, help="Directory for received screenshots")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level")
    args = parser.parse_args()

    settings = load_settings()
    if args.host is not None:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
    if args.storage_dir is not None:
        settings.storage_dir = Path(args.storage_dir).expanduser()
    if args.log_level is not None:
        settings.log_level = args.log_level

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    url = f"http://{lan_address()}:{settings.port}"
    print("\n" + "=" * 60)
    print(f"  CrossShot collector {__version__}")
    print("=" * 60)
    print(f"  Upload URL   : {url}/api/upload")
    print(f"  Proxy stream : ws://{url.split('://', 1)[1]}{PROXY_STREAM_PATH}")
    print(f"  Storage      : {settings.storage_dir}")
    print(f"  Listening    : {settings.host}:{settings.port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        ws_max_size=settings.max_upload_bytes + _WS_FRAME_OVERHEAD,
    )


if __name__ == "__main__":
    main()
