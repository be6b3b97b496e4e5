"""Main entry point for the speechcmd daemon."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, NoReturn, Optional, Set

from .audio_source import AudioSource, list_devices
from .commands import CommandMapper, CommandRecognized, UnrecognizedUtterance
from .config import load_config
from .fallback import StdinCommandSource
from .logging_setup import setup_logging
from .pipeline_manager import SpeechPipeline
from .preflight import PreflightChecker
from .state import PipelineStateEnum, PipelineStateManager

logger = logging.getLogger(__name__)

__all__ = ["run"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="speechcmd",
        description="Turn spoken 'one'/'two' answers into command events.",
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to config.toml")
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="Print input devices with their indexes and exit",
    )
    return parser.parse_args(argv)


def _print_command(event: CommandRecognized) -> None:
    print(f"command {event.value.value}", flush=True)


def _print_repeat(event: UnrecognizedUtterance) -> None:
    print("please repeat", flush=True)


async def main(
    argv: Optional[List[str]] = None,
    shutdown_event: Optional[asyncio.Event] = None,
) -> int:
    """Main daemon function.

    Args:
        argv: Command line arguments, defaults to sys.argv.
        shutdown_event: Event that ends the daemon when set. Signals set it too.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_args(argv)

    if args.list_devices:
        for index, name in enumerate(list_devices()):
            print(f"{index}: {name}")
        return 0

    # Load configuration first
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting speechcmd daemon...")

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    # Everything is built once here and passed down explicitly
    state_manager = PipelineStateManager()
    mapper = CommandMapper(config.vocabulary)
    pipeline = SpeechPipeline(
        config,
        state_manager,
        AudioSource(channels=config.audio.channels),
        PreflightChecker(config.whisper),
        mapper,
    )
    fallback = StdinCommandSource(mapper)
    pipeline.subscribe(_print_command, _print_repeat)

    background: Set[asyncio.Task] = set()

    def on_state_change(state: PipelineStateEnum, error: Optional[str]) -> None:
        if state == PipelineStateEnum.FAILED:
            logger.error(f"Speech pipeline failed: {error}")
            if not fallback.is_running:
                task = asyncio.create_task(fallback.start())
                background.add(task)
                task.add_done_callback(background.discard)

    state_manager.add_observer(on_state_change)

    try:

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        if not await pipeline.start():
            reason = pipeline.last_error or "disabled in configuration"
            logger.warning(f"Speech recognition not running ({reason})")
            logger.warning("Falling back to keyboard input")
            await fallback.start()

        logger.info("Daemon started successfully")
        await shutdown_event.wait()
        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon:")
        return 1

    finally:
        for task in list(background):
            task.cancel()
        await fallback.stop()
        await pipeline.close()
        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"Daemon failed with unhandled exception: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
