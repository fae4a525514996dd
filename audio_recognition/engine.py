"""
Recognition Orchestrator Module

Sequences capture -> identify -> generate -> publish cycles.
Features:
- Immediate cycle on start, then one cycle per configured interval
- Single-flight: a trigger arriving while a cycle is active is dropped
- External track events pre-empt the running cycle and reset the schedule
- Every stage failure ends only the current cycle; the schedule keeps running
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from errors import CaptureError, ConfigError, RecognitionCancelled, RecognitionError
from logging_config import get_logger
from models import Prompt, Track
from system_utils.helpers import create_tracked_task

from .scheduler import ScheduleState, Scheduler, Timer, countdown_seconds

logger = get_logger(__name__)


class CycleState(Enum):
    """Orchestrator state machine states."""
    IDLE = "idle"                              # Not running
    LISTENING = "listening"                    # Waiting for the next trigger
    CAPTURING = "capturing"                    # Recording a snippet
    IDENTIFYING = "identifying"                # Waiting for the Recognizer
    NO_MATCH = "no_match"                      # Last identification found nothing
    GENERATING_PROMPTS = "generating_prompts"  # Waiting for the PromptGenerator
    PUBLISHING = "publishing"                  # Sending track metadata
    ERROR = "error"                            # Last cycle failed
    CANCELLED = "cancelled"                    # Stopping


ACTIVE_STATES = frozenset({
    CycleState.CAPTURING,
    CycleState.IDENTIFYING,
    CycleState.GENERATING_PROMPTS,
    CycleState.PUBLISHING,
})


class Status:
    """Values of the outbound status event."""
    LISTENING = "listening"
    RECOGNIZING = "recognizing"
    IDENTIFIED = "identified"
    NO_MATCH = "no_match"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class OrchestratorConfig:
    """
    Attributes:
        interval_seconds: Seconds between periodic cycles
        snippet_seconds: Recording/listening window per identification
        tick_seconds: Countdown ticker period (observability only)
    """
    interval_seconds: float = 300.0
    snippet_seconds: float = 7.0
    tick_seconds: float = 1.0


class RecognitionOrchestrator:
    """
    Core recognition state machine.

    Collaborators are injected already configured:
        recognizer: Recognizer (AudD, ACRCloud, ...)
        publisher: object with is_configured(), send_track(), send_status(),
                   send_manual(), send_ping()
        capturer: SnippetCapturer, required when recognizer.needs_snippet
        prompt_generator: optional PromptGenerator
        event_source: optional object with subscribe(callback) delivering
                      externally identified Tracks

    The orchestrator owns the current Track and the CycleState; collaborators
    only return new values.
    """

    def __init__(
        self,
        recognizer,
        publisher,
        capturer=None,
        prompt_generator=None,
        event_source=None,
        config: Optional[OrchestratorConfig] = None,
        scheduler: Optional[Scheduler] = None,
        on_state_change: Optional[Callable[[CycleState], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_track: Optional[Callable[[Track], None]] = None,
    ):
        self.recognizer = recognizer
        self.publisher = publisher
        self.capturer = capturer
        self.prompt_generator = prompt_generator
        self.config = config or OrchestratorConfig()
        self.scheduler = scheduler or Scheduler()

        self.on_state_change = on_state_change
        self.on_status = on_status
        self.on_track = on_track

        self._state = CycleState.IDLE
        self._status_text = "Ready"
        self._running = False

        # Single-flight guard; set synchronously when a cycle task is created
        self._cycle_active = False
        self._cycle_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._current_track: Optional[Track] = None
        self._current_stamp = 0.0

        self._periodic_timer: Optional[Timer] = None
        self._ticker: Optional[Timer] = None
        self._countdown: Optional[int] = None

        if event_source is not None:
            event_source.subscribe(self.on_external_track)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def status_text(self) -> str:
        return self._status_text

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_active(self) -> bool:
        return self._cycle_active

    @property
    def current_track(self) -> Optional[Track]:
        return self._current_track

    @property
    def seconds_until_next(self) -> Optional[int]:
        return self._countdown

    @property
    def schedule(self) -> ScheduleState:
        return ScheduleState(self.config.interval_seconds, self._countdown)

    def status_snapshot(self) -> Dict[str, Any]:
        """Current orchestrator status for display and diagnostics."""
        return {
            "state": self._state.value,
            "status": self._status_text,
            "running": self._running,
            "cycle_active": self._cycle_active,
            "interval_seconds": self.config.interval_seconds,
            "seconds_until_next": self._countdown,
            "recognizer": getattr(self.recognizer, "name", None),
            "track": self._current_track.to_dict() if self._current_track else None,
        }

    # =========================================================================
    # Control
    # =========================================================================

    async def start(self, config: Optional[OrchestratorConfig] = None) -> None:
        """
        Start listening: one immediate cycle, then one per interval.

        Raises:
            ConfigError: recognizer credentials invalid, or the configuration
                         cannot run. Nothing is armed in that case.
        """
        if self._running:
            logger.warning("Orchestrator already running")
            return

        config = config or self.config
        if config.interval_seconds <= 0 or config.snippet_seconds <= 0:
            raise ConfigError("Interval and snippet duration must be positive")
        if not self.recognizer.has_valid_credentials():
            self._set_status("Error: recognizer credentials are missing or invalid")
            raise ConfigError(f"{getattr(self.recognizer, 'name', 'Recognizer')} credentials are missing or invalid")
        if self.recognizer.needs_snippet and self.capturer is None:
            raise ConfigError(f"{self.recognizer.name} needs a snippet capturer")

        logger.info(
            f"Starting recognition orchestrator "
            f"(provider: {self.recognizer.name}, interval: {config.interval_seconds:.0f}s)"
        )
        self.config = config
        self._running = True
        self._set_state(CycleState.LISTENING)
        self._set_status("Listening...")
        self._publish_status(Status.LISTENING)

        self._arm_periodic()
        self._ticker = self.scheduler.every(config.tick_seconds, self._on_tick)
        self.trigger_cycle()

    async def stop(self) -> None:
        """
        Stop the orchestrator: Cancelled -> Idle.

        Cancels capture/identification in progress and disarms both timers.
        Safe to call when already idle.
        """
        if not self._running and not self._cycle_active:
            return

        logger.info("Stopping recognition orchestrator...")
        was_running = self._running
        self._running = False
        self._set_state(CycleState.CANCELLED)
        self._set_status("Stopping...")

        self._disarm_timers()

        # Unblock pending stages first, then cancel the cycle task itself
        if self.capturer is not None:
            self.capturer.cancel()
        self.recognizer.cancel()

        task = self._cycle_task
        if task is not None and not task.done():
            # One loop pass lets a cancelled identify settle through its own error path
            await asyncio.sleep(0)
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._cycle_task = None
        self._cycle_active = False

        self._set_state(CycleState.IDLE)
        self._set_status("Ready")
        if was_running:
            self._publish_status(Status.STOPPED)
        logger.info("Recognition orchestrator stopped")

    def send_manual_event(self, text: str) -> bool:
        """
        Forward free text to the receiver, outside the cycle state machine.

        Returns:
            False if the text was empty and nothing was sent

        Raises:
            ConfigError: publisher endpoint not configured
        """
        message = (text or "").strip()
        if not message:
            return False
        self._require_publisher()
        self.publisher.send_manual(message)
        logger.info(f"Manual event sent: {message}")
        return True

    def send_ping(self) -> None:
        """Send the test "ping" event."""
        self._require_publisher()
        self.publisher.send_ping()

    def publish_test_track(self, track: Track) -> None:
        """Publish a track as current without running a cycle."""
        self._require_publisher()
        self._commit(track, time.time())
        self.publisher.send_track(track)
        self._notify_track(track)

    def _require_publisher(self) -> None:
        if not self.publisher.is_configured():
            raise ConfigError("OSC endpoint is not configured")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _arm_periodic(self) -> None:
        """(Re)arm the periodic timer at the full interval; this resets the countdown."""
        if self._periodic_timer is not None:
            self._periodic_timer.cancel()
        self._periodic_timer = self.scheduler.fire_after(self.config.interval_seconds, self._on_periodic_fire)
        self._countdown = countdown_seconds(self._periodic_timer)

    def _disarm_timers(self) -> None:
        for timer in (self._periodic_timer, self._ticker):
            if timer is not None:
                timer.cancel()
        self._periodic_timer = None
        self._ticker = None
        self._countdown = None

    def _on_periodic_fire(self) -> None:
        if not self._running:
            return
        self._arm_periodic()
        self.trigger_cycle()

    def _on_tick(self) -> None:
        self._countdown = countdown_seconds(self._periodic_timer)

    def trigger_cycle(self) -> Optional[asyncio.Task]:
        """
        Start a cycle unless one is already active.

        Returns:
            The cycle task, or None if the trigger was dropped
        """
        if not self._running:
            return None
        if self._cycle_active:
            logger.debug("Cycle already active, dropping trigger")
            return None

        self._cycle_active = True
        task = create_tracked_task(self._run_cycle(time.time()), self._tasks, name="recognition-cycle")
        self._cycle_task = task
        return task

    # =========================================================================
    # Cycle
    # =========================================================================

    async def _run_cycle(self, stamp: float) -> None:
        """One capture -> identify -> generate -> publish attempt."""
        try:
            duration = self.config.snippet_seconds
            snippet = None
            self._publish_status(Status.RECOGNIZING)

            if self.recognizer.needs_snippet:
                self._set_state(CycleState.CAPTURING)
                self._set_status(f"Recording {duration:.0f}s snippet...")
                try:
                    snippet = await self.capturer.record_snippet(duration)
                except CaptureError as e:
                    self._fail_cycle(f"Capture failed: {e}")
                    return

            self._set_state(CycleState.IDENTIFYING)
            self._set_status("Identifying...")
            try:
                track = await self.recognizer.identify(duration, snippet)
            except RecognitionCancelled:
                logger.info("Identification cancelled")
                return
            except RecognitionError as e:
                self._fail_cycle(f"Identification failed: {e}")
                return
            finally:
                snippet = None

            if track is None:
                logger.info("No match found")
                self._set_state(CycleState.NO_MATCH)
                self._set_status("No match found")
                self._publish_status(Status.NO_MATCH)
                return

            await self._deliver(track, stamp)
        finally:
            self._end_cycle()

    async def _run_external_cycle(self, track: Track, stamp: float,
                                  previous: Optional[asyncio.Task]) -> None:
        """Publish (and generate for) an injected track after the pre-empted cycle unwinds."""
        try:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            self._set_status(f"External track: {track}")
            await self._deliver(track, stamp)
        finally:
            self._end_cycle()

    def _end_cycle(self) -> None:
        # A pre-empted task must not clear the guard of the cycle that replaced it
        if self._cycle_task is not asyncio.current_task():
            return
        self._cycle_task = None
        self._cycle_active = False
        if self._state in (CycleState.IDLE, CycleState.CANCELLED):
            return
        if not self._running:
            # External track handled while stopped
            self._set_state(CycleState.IDLE)
            return
        if self._state in ACTIVE_STATES:
            self._set_status("Listening...")
        self._set_state(CycleState.LISTENING)

    def _fail_cycle(self, message: str) -> None:
        if self._state is CycleState.CANCELLED:
            logger.debug(f"Ignoring failure while stopping: {message}")
            return
        logger.warning(message)
        self._set_state(CycleState.ERROR)
        self._set_status(f"Error: {message}")
        self._publish_status(Status.ERROR)

    async def _deliver(self, track: Track, stamp: float) -> None:
        """Dedup, publish stage 1, generate prompts, publish stage 2."""
        track = track.without_prompts()
        current = self._current_track

        if track.same_track(current):
            logger.info(f"Same track still playing ({track}), skipping prompt generation")
            self._set_state(CycleState.PUBLISHING)
            self._set_status(f"Still playing: {track}")
            self._publish_track(current)
            return

        if not self._commit(track, stamp):
            return

        logger.info(f"Track identified: {track} (source: {track.source})")
        self._set_state(CycleState.PUBLISHING)
        self._set_status(f"Identified: {track}")
        self._publish_status(Status.IDENTIFIED)
        self._publish_track(track)
        self._notify_track(track)

        generator = self.prompt_generator
        if generator is None or not generator.has_valid_credentials():
            return

        self._set_state(CycleState.GENERATING_PROMPTS)
        self._set_status(f"Generating prompts ({generator.name})...")
        prompts = await self._generate_prompts(track)

        enriched = track.with_prompts(prompts)
        if not self._commit(enriched, stamp, same_as_current=True):
            return

        self._set_state(CycleState.PUBLISHING)
        self._set_status(f"Published {len(enriched.prompts)} prompts for {track}")
        self._publish_track(enriched)
        self._notify_track(enriched)

    async def _generate_prompts(self, track: Track) -> List[Prompt]:
        generator = self.prompt_generator
        try:
            return await generator.generate(track)
        except RecognitionError as e:
            logger.warning(f"Prompt generation failed: {e}")
            return [generator.diagnostic_prompt(track, e)]
        except Exception as e:
            logger.error(f"Unexpected prompt generation error: {e}", exc_info=True)
            return [generator.diagnostic_prompt(track, e)]

    def _commit(self, track: Track, stamp: float, same_as_current: bool = False) -> bool:
        """
        Make track the current one (last writer wins by cycle start time).

        Args:
            same_as_current: only accept if the current track is still the same
                             song (prompt enrichment of an earlier commit)
        """
        if stamp < self._current_stamp:
            logger.info(f"Discarding stale result for {track}")
            return False
        if same_as_current and not track.same_track(self._current_track):
            logger.info(f"Track changed while generating prompts, discarding prompts for {track}")
            return False
        self._current_track = track
        self._current_stamp = stamp
        return True

    # =========================================================================
    # External events
    # =========================================================================

    def on_external_track(self, track: Track) -> asyncio.Task:
        """
        Handle a track identified elsewhere (e.g. another instance over OSC).

        Pre-empts any active cycle, resets the countdown to the full interval
        when running, and publishes the injected track without capturing or
        identifying.

        Returns:
            Task running the injected track through generate/publish
        """
        logger.info(f"External track received: {track}")
        previous = self._cycle_task if self._cycle_active else None
        if previous is not None:
            logger.info("Pre-empting active cycle")
            if self.capturer is not None:
                self.capturer.cancel()
            self.recognizer.cancel()
            previous.cancel()

        if self._running:
            self._arm_periodic()

        # Results of cycles started before this event are stale from now on
        stamp = time.time()
        self._current_stamp = max(self._current_stamp, stamp)

        self._cycle_active = True
        task = create_tracked_task(
            self._run_external_cycle(track, stamp, previous), self._tasks, name="external-track"
        )
        self._cycle_task = task
        return task

    # =========================================================================
    # Publishing and notifications
    # =========================================================================

    def _publish_track(self, track: Track) -> None:
        if not self.publisher.is_configured():
            logger.debug("OSC not configured, skipping track publish")
            return
        self.publisher.send_track(track)

    def _publish_status(self, status: str) -> None:
        if self.publisher.is_configured():
            self.publisher.send_status(status)

    def _notify_track(self, track: Track) -> None:
        if self.on_track:
            try:
                self.on_track(track)
            except Exception as e:
                logger.error(f"Track callback error: {e}")

    def _set_status(self, text: str) -> None:
        self._status_text = text
        if self.on_status:
            try:
                self.on_status(text)
            except Exception as e:
                logger.error(f"Status callback error: {e}")

    def _set_state(self, new_state: CycleState) -> None:
        """
        Update state and trigger callback.

        Args:
            new_state: New state to set
        """
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state

        logger.debug(f"Orchestrator state: {old_state.value} -> {new_state.value}")

        if self.on_state_change:
            try:
                self.on_state_change(new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")
