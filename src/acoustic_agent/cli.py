"""CLI for the acoustic telemetry agent."""

import argparse
import asyncio
import logging
import sys

from acoustic_agent.agent import AgentSettings, TelemetryAgent
from acoustic_agent.audio.collector import CaptureError, list_input_devices
from acoustic_agent.audio.config import AudioConfig, LEGACY_BAND_EDGES
from acoustic_agent.audio.features import BandCalibration

logger = logging.getLogger("acoustic_agent")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stream microphone spectra (mono 44.1 kHz) to a signaling server"
    )
    parser.add_argument(
        "--addr",
        default=None,
        help="Signaling server host:port (default: $SERVER_ADDRESS; prints records if unset)",
    )
    parser.add_argument(
        "--device-id",
        default=None,
        help="Device id announced to the server (default: $DEVICE_ID)",
    )
    parser.add_argument(
        "--input-device",
        default=None,
        help="Input device index or name (list with --list-devices)",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio devices and exit",
    )
    parser.add_argument(
        "--worker",
        action="store_true",
        help="Analyse on a worker thread instead of inside the audio callback",
    )
    parser.add_argument(
        "--legacy-bands",
        action="store_true",
        help="Use the 32-entry band edge list",
    )
    parser.add_argument(
        "--band-calibration",
        choices=[rule.value for rule in BandCalibration],
        default=BandCalibration.ADD.value,
        help="How DB_OFFSET is applied to band values (default: add)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def _parse_device(raw):
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return raw


def main() -> None:
    args = build_parser().parse_args()
    setup_logging(verbose=args.verbose)

    if args.list_devices:
        try:
            print(list_input_devices())
        except ImportError as exc:
            print(exc, file=sys.stderr)
            sys.exit(1)
        return

    settings = AgentSettings.from_env()
    if args.addr is not None:
        settings.server_address = args.addr
    if args.device_id is not None:
        settings.device_id = args.device_id
    settings.input_device = _parse_device(args.input_device)
    settings.use_worker = args.worker
    settings.band_calibration = BandCalibration(args.band_calibration)

    config = AudioConfig(band_edges=LEGACY_BAND_EDGES) if args.legacy_bands else AudioConfig()

    if not settings.server_address:
        logger.info("No server address, writing records to stdout")

    async def run() -> None:
        await TelemetryAgent(settings, audio_config=config).run()

    try:
        asyncio.run(run())
    except (CaptureError, ImportError) as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    logger.info("Exiting")


if __name__ == "__main__":
    main()
