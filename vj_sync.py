import sys
import os

# Safety fix for running with pythonw.exe (no console)
# When using pythonw, stdout/stderr are None, causing crashes if anything tries to print
if sys.stdout is None:
    sys.stdout = open(os.devnull, "w")
if sys.stderr is None:
    sys.stderr = open(os.devnull, "w")

import argparse
import asyncio
import signal
from typing import Optional

from config import DEBUG, OSC, RECOGNITION, VERSION
from errors import ConfigError, VJSyncError
from logging_config import setup_logging, get_logger

logger = get_logger(__name__)

_shutdown_event: Optional[asyncio.Event] = None
_orchestrator = None
_listener = None


def request_shutdown() -> None:
    if _shutdown_event is not None and not _shutdown_event.is_set():
        logger.info("Shutdown requested...")
        _shutdown_event.set()


def build_publisher():
    from osc_bridge import OSCPublisher
    return OSCPublisher(OSC["host"], OSC["port"], OSC["address_prefix"])


def build_capturer():
    from audio_recognition import SnippetCapturer
    return SnippetCapturer(
        device_id=RECOGNITION["device_id"],
        device_name=RECOGNITION["device_name"] or None,
    )


async def cleanup() -> None:
    """Cleanup resources before exit"""
    logger.info("Cleaning up resources...")

    # Stop the orchestrator FIRST so capture and streaming sessions are aborted
    if _orchestrator is not None:
        try:
            await asyncio.wait_for(_orchestrator.stop(), timeout=3.0)
        except asyncio.TimeoutError:
            logger.warning("Orchestrator stop timeout - forcing cleanup")
        try:
            await _orchestrator.recognizer.close()
        except VJSyncError as e:
            logger.error(f"Error closing recognizer: {e}")

    if _listener is not None:
        _listener.stop()

    from system_utils import cancel_tracked_tasks, shutdown_daemon_executor
    await cancel_tracked_tasks()
    shutdown_daemon_executor()
    logger.debug("Daemon executor shutdown")


def apply_settings_commands(args) -> int:
    """Handle --reset-settings, --set and --show-settings (in that order)."""
    from settings import settings

    if args.reset_settings:
        settings.reset_to_defaults()
        logger.info("Settings reset to defaults")

    if args.set:
        known = {key for group in settings.get_all().values() for key in group}
        assignments = []
        for item in args.set:
            key, sep, value = item.partition("=")
            key = key.strip()
            if not sep or key not in known:
                logger.error(f"Unknown setting or missing '=': {item}")
                return 2
            assignments.append((key, value.strip()))

        needs_restart = False
        for key, value in assignments:
            needs_restart = settings.set(key, value) or needs_restart
            logger.info(f"Setting {key} = {settings.get(key)!r}")
        settings.save_to_config()
        print("Settings saved (restart required)" if needs_restart else "Settings saved")

    if args.show_settings:
        for category, entries in settings.get_all().items():
            print(f"[{category}]")
            for key, info in entries.items():
                flag = " *" if info["requires_restart"] else ""
                print(f"  {key} = {info['value']!r}{flag}")
    return 0


async def run_command(args) -> int:
    """One-shot commands that do not start the recognition loop."""
    if args.reset_settings or args.set or args.show_settings:
        return apply_settings_commands(args)

    if args.list_devices:
        from audio_recognition import SnippetCapturer
        devices = SnippetCapturer.list_devices()
        if not devices:
            print("No input devices found (is sounddevice/PortAudio installed?)")
        for device in devices:
            print(f"[{device['id']}] {device['name']} ({device['channels']} ch, {device['sample_rate']} Hz)")
        return 0

    publisher = build_publisher()

    if args.diagnose:
        print(publisher.diagnostics())
        return 0

    if args.send_test_track:
        from audio_recognition import RecognitionOrchestrator
        from config import build_recognizer
        from models import Track
        track = Track(title="Test Track", artist="VJSync", genre="Test", bpm=120, energy=0.8,
                      danceability=0.7, source="test").with_prompts(["Test prompt"])
        orchestrator = RecognitionOrchestrator(build_recognizer(), publisher)
        try:
            orchestrator.publish_test_track(track)
        except ConfigError as e:
            logger.error(f"Cannot send test track: {e}")
            return 2
        logger.info(f"Test track sent to {publisher.host}:{publisher.port}")
        return 0

    if args.ping or args.manual:
        if not publisher.is_configured():
            logger.error("OSC endpoint is not configured (osc.host / osc.port)")
            return 2
        if args.ping:
            publisher.send_ping()
            logger.info(f"Ping sent to {publisher.host}:{publisher.port}")
        if args.manual:
            publisher.send_manual(args.manual)
            logger.info(f"Manual event sent: {args.manual}")
        return 0

    if args.test_llm:
        from config import build_prompt_generator
        generator = build_prompt_generator()
        if generator is None:
            logger.error("No LLM provider configured (llm.provider = none)")
            return 2
        try:
            prompts = await generator.test_connection()
        except VJSyncError as e:
            logger.error(f"LLM connection test failed: {e}")
            return 1
        for prompt in prompts:
            print(f"{prompt.number:>2}. {prompt.text}")
        return 0

    return -1


async def main(args) -> int:
    """
    Build the collaborators, start the orchestrator and wait for a shutdown signal.
    """
    global _shutdown_event, _orchestrator, _listener

    code = await run_command(args)
    if code >= 0:
        from system_utils import shutdown_daemon_executor
        shutdown_daemon_executor()
        return code

    from audio_recognition import RecognitionOrchestrator
    from config import build_orchestrator_config, build_prompt_generator, build_recognizer

    _shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to the synchronous handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(request_shutdown))

    recognizer = build_recognizer()
    publisher = build_publisher()
    capturer = build_capturer() if recognizer.needs_snippet else None
    generator = build_prompt_generator()

    if OSC["listen_enabled"]:
        from osc_bridge import ExternalTrackListener
        _listener = ExternalTrackListener(OSC["listen_port"], OSC["address_prefix"])
        # Keeps retrying while the port is in use; stop() in cleanup cancels it
        _listener.start_in_background()

    if not publisher.is_configured():
        logger.warning("OSC output is not configured; tracks will only be logged")

    _orchestrator = RecognitionOrchestrator(
        recognizer,
        publisher,
        capturer=capturer,
        prompt_generator=generator,
        event_source=_listener,
        on_status=lambda text: logger.info(f"Status: {text}"),
    )

    try:
        config = build_orchestrator_config()
        if args.interval:
            config.interval_seconds = args.interval * 60
        await _orchestrator.start(config)
    except ConfigError as e:
        logger.error(f"Cannot start: {e}")
        await cleanup()
        return 2

    try:
        logger.info("Entering main loop...")
        await _shutdown_event.wait()
    except asyncio.CancelledError:
        logger.info("Main loop cancelled...")
    finally:
        await cleanup()
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='VJSync - identify the playing track and drive VJ visuals over OSC')
    parser.add_argument('--version', action='version', version=f'VJSync {VERSION}')
    parser.add_argument('--interval', type=int, metavar='MINUTES',
                        help='Override the recognition interval (minutes)')
    parser.add_argument('--list-devices', action='store_true',
                        help='List audio input devices and exit')
    parser.add_argument('--diagnose', action='store_true',
                        help='Print an OSC network diagnostic and exit')
    parser.add_argument('--ping', action='store_true',
                        help='Send the OSC test ping and exit')
    parser.add_argument('--manual', metavar='TEXT',
                        help='Send a manual OSC event and exit')
    parser.add_argument('--test-llm', action='store_true',
                        help='Generate prompts for a dummy track and exit')
    parser.add_argument('--send-test-track', action='store_true',
                        help='Publish a dummy track over OSC and exit')
    parser.add_argument('--set', action='append', metavar='KEY=VALUE',
                        help='Change a setting in settings.json and exit (repeatable)')
    parser.add_argument('--show-settings', action='store_true',
                        help='Print all settings grouped by category and exit')
    parser.add_argument('--reset-settings', action='store_true',
                        help='Delete settings.json and restore defaults, then exit')
    return parser.parse_args(argv)


def run(argv=None) -> None:
    args = parse_args(argv)

    # Set up logging
    setup_logging(
        console_level=DEBUG.get("log_level", "INFO"),
        file_level="DEBUG" if DEBUG.get("log_detailed", False) else "INFO",
        console=DEBUG.get("log_to_console", True),
        log_file=DEBUG.get("log_file", "vjsync.log"),
        max_bytes=DEBUG["log_rotation"]["max_bytes"],
        backup_count=DEBUG["log_rotation"]["backup_count"],
        log_providers=DEBUG.get("log_providers", True)
    )

    exit_code = 0
    try:
        logger.info(f"Starting VJSync {VERSION}...")
        exit_code = asyncio.run(main(args))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt caught in main...")
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        raise
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
