"""
Audio Bridge CLI - runs the bridge service.

Entry point:
    audio-bridge   - serve browser contexts on the messaging gateway

Usage:
    audio-bridge --port 8790
    audio-bridge --list-devices
"""

import argparse
import asyncio
import logging
import signal
import sys

from audio_bridge.config import BridgeSettings
from audio_bridge.logging_config import configure_logging

logger = logging.getLogger(__name__)


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audio-bridge",
        description="Audio Bridge - tab audio capture, studio relay and batch sampling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  audio-bridge                      # Serve on the configured host/port
  audio-bridge --port 9100          # Custom gateway port
  audio-bridge --device 3           # Capture from a specific loopback device
        """,
    )
    parser.add_argument("--host", type=str, default=None, help="Gateway bind address")
    parser.add_argument("--port", "-p", type=validate_port, default=None, help="Gateway port")
    parser.add_argument(
        "--device", type=int, default=None, help="Capture device index (default: auto-detect)"
    )
    parser.add_argument(
        "--list-devices", action="store_true", help="List available audio devices and exit"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit JSON log records regardless of AUDIO_BRIDGE_ENV"
    )
    return parser


def list_devices() -> int:
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        logger.error(f"sounddevice unavailable: {e}")
        return 1

    print("\nAvailable audio devices:")
    print("-" * 60)
    for i, device in enumerate(sd.query_devices()):
        kind = ""
        if device["max_input_channels"] > 0:
            kind += "IN"
        if device["max_output_channels"] > 0:
            kind += "/OUT" if kind else "OUT"
        print(f"[{i:2d}] {device['name']}")
        print(f"     {kind} - {int(device['default_samplerate'])} Hz")
    print("-" * 60)
    print("\nLook for a 'Monitor', 'Loopback' or 'Stereo Mix' input.")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, json_output=True if args.json_logs else None)

    if args.list_devices:
        return list_devices()

    overrides = {
        key: value
        for key, value in (("host", args.host), ("port", args.port), ("capture_device", args.device))
        if value is not None
    }
    settings = BridgeSettings(**overrides)

    from audio_bridge.service import AudioBridge

    async def _run():
        bridge = AudioBridge(settings)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, bridge.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                signal.signal(sig, lambda *_: bridge.request_stop())
        await bridge.run_forever()

    try:
        asyncio.run(_run())
    except OSError as e:
        logger.error(f"Failed to start gateway: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
