"""Tests for the recognition orchestrator state machine"""
import asyncio

import pytest

from audio_recognition.engine import CycleState, OrchestratorConfig, RecognitionOrchestrator
from errors import CaptureError, ConfigError, NetworkError, RecognitionCancelled
from models import Prompt, Track

from conftest import FakeCapturer, FakeGenerator, FakePublisher, FakeRecognizer, wait_until

FAST = OrchestratorConfig(interval_seconds=60.0, snippet_seconds=0.05, tick_seconds=0.05)


def make_orchestrator(recognizer, publisher, **kwargs):
    states = []
    orchestrator = RecognitionOrchestrator(
        recognizer, publisher, config=FAST, on_state_change=states.append, **kwargs
    )
    orchestrator.states_seen = states
    return orchestrator


async def wait_for_cycle(orchestrator):
    await wait_until(lambda: not orchestrator.cycle_active)


async def test_start_with_invalid_credentials_raises(publisher):
    recognizer = FakeRecognizer(valid=False)
    orchestrator = make_orchestrator(recognizer, publisher)

    with pytest.raises(ConfigError):
        await orchestrator.start()

    assert orchestrator.state is CycleState.IDLE
    assert not orchestrator.is_running
    assert orchestrator.seconds_until_next is None
    assert recognizer.calls == 0
    assert publisher.sent == []


async def test_start_requires_capturer_for_snippet_recognizer(publisher):
    recognizer = FakeRecognizer(needs_snippet=True)
    orchestrator = make_orchestrator(recognizer, publisher)

    with pytest.raises(ConfigError):
        await orchestrator.start()
    assert orchestrator.state is CycleState.IDLE


async def test_immediate_cycle_publishes_track(publisher, track):
    recognizer = FakeRecognizer([track], needs_snippet=True)
    capturer = FakeCapturer()
    orchestrator = make_orchestrator(recognizer, publisher, capturer=capturer)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    assert capturer.calls == 1
    assert recognizer.snippets[0] is not None
    assert publisher.tracks == [track]
    assert publisher.statuses == ["listening", "recognizing", "identified"]
    assert orchestrator.current_track == track
    assert orchestrator.state is CycleState.LISTENING
    assert orchestrator.states_seen[:4] == [
        CycleState.LISTENING, CycleState.CAPTURING, CycleState.IDENTIFYING, CycleState.PUBLISHING,
    ]
    assert 0 < orchestrator.seconds_until_next <= 60
    await orchestrator.stop()


async def test_streaming_recognizer_skips_capturing(publisher, track):
    recognizer = FakeRecognizer([track])
    orchestrator = make_orchestrator(recognizer, publisher)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    assert CycleState.CAPTURING not in orchestrator.states_seen
    assert recognizer.snippets == [None]
    await orchestrator.stop()


async def test_trigger_dropped_while_cycle_active(publisher, track):
    recognizer = FakeRecognizer([track, track], delay=0.2)
    orchestrator = make_orchestrator(recognizer, publisher)

    await orchestrator.start()
    await asyncio.sleep(0.05)
    assert orchestrator.cycle_active
    assert orchestrator.trigger_cycle() is None

    await wait_for_cycle(orchestrator)
    assert recognizer.calls == 1
    await orchestrator.stop()


async def test_single_flight_under_many_triggers(publisher, track):
    recognizer = FakeRecognizer([track] * 5, delay=0.02)
    orchestrator = make_orchestrator(recognizer, publisher)
    active = []
    overlap = []

    def on_state(state):
        if state in (CycleState.CAPTURING, CycleState.IDENTIFYING):
            if active:
                overlap.append(state)
            active.append(state)
        elif state in (CycleState.LISTENING, CycleState.NO_MATCH, CycleState.ERROR):
            active.clear()

    orchestrator.on_state_change = on_state
    await orchestrator.start()
    for _ in range(20):
        orchestrator.trigger_cycle()
        await asyncio.sleep(0.005)
    await wait_for_cycle(orchestrator)

    assert overlap == []
    await orchestrator.stop()


async def test_stop_while_identifying_settles_cancelled(publisher, track):
    recognizer = FakeRecognizer([track], delay=10)
    orchestrator = make_orchestrator(recognizer, publisher)

    await orchestrator.start()
    await wait_until(lambda: orchestrator.state is CycleState.IDENTIFYING)
    await orchestrator.stop()

    assert orchestrator.state is CycleState.IDLE
    assert recognizer.outcomes == [RecognitionCancelled]
    assert not recognizer.is_busy
    assert not orchestrator.cycle_active
    assert orchestrator.seconds_until_next is None
    assert orchestrator.states_seen[-2:] == [CycleState.CANCELLED, CycleState.IDLE]
    assert publisher.statuses[-1] == "stopped"
    assert "error" not in publisher.statuses


async def test_stop_while_capturing(publisher, track):
    recognizer = FakeRecognizer([track], needs_snippet=True)
    capturer = FakeCapturer(delay=10)
    orchestrator = make_orchestrator(recognizer, publisher, capturer=capturer)

    await orchestrator.start()
    await wait_until(lambda: orchestrator.state is CycleState.CAPTURING)
    await orchestrator.stop()

    assert orchestrator.state is CycleState.IDLE
    assert capturer.cancels >= 1
    assert recognizer.calls == 0
    assert not orchestrator.cycle_active


async def test_stop_is_idempotent(publisher):
    orchestrator = make_orchestrator(FakeRecognizer(), publisher)

    await orchestrator.stop()
    await orchestrator.stop()

    assert orchestrator.state is CycleState.IDLE
    assert publisher.sent == []


async def test_capture_error_ends_cycle_only(publisher, track):
    recognizer = FakeRecognizer([track], needs_snippet=True)
    capturer = FakeCapturer(error=CaptureError("device unplugged"))
    orchestrator = make_orchestrator(recognizer, publisher, capturer=capturer)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    assert recognizer.calls == 0
    assert CycleState.ERROR in orchestrator.states_seen
    assert publisher.statuses[-1] == "error"
    assert orchestrator.state is CycleState.LISTENING
    assert orchestrator.is_running

    # Schedule unaffected: the next trigger runs a full cycle
    capturer.error = None
    orchestrator.trigger_cycle()
    await wait_for_cycle(orchestrator)
    assert publisher.tracks == [track]
    await orchestrator.stop()


async def test_identification_error_and_no_match(publisher, track):
    recognizer = FakeRecognizer([NetworkError("offline"), None, track])
    orchestrator = make_orchestrator(recognizer, publisher)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)
    assert publisher.statuses[-1] == "error"
    assert "Identification failed" in orchestrator.status_text

    orchestrator.trigger_cycle()
    await wait_for_cycle(orchestrator)
    assert publisher.statuses[-1] == "no_match"
    assert CycleState.NO_MATCH in orchestrator.states_seen
    assert publisher.tracks == []

    orchestrator.trigger_cycle()
    await wait_for_cycle(orchestrator)
    assert publisher.tracks == [track]
    await orchestrator.stop()


async def test_prompts_published_in_second_stage(publisher, track):
    generator = FakeGenerator(count=3)
    orchestrator = make_orchestrator(FakeRecognizer([track]), publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    first, second = publisher.tracks
    assert first.prompts == ()
    assert second.prompts == ("Strobe visual 1", "Strobe visual 2", "Strobe visual 3")
    assert second.same_track(first)
    assert orchestrator.current_track.prompts == second.prompts
    assert CycleState.GENERATING_PROMPTS in orchestrator.states_seen
    await orchestrator.stop()


async def test_generator_failure_publishes_placeholder(publisher, track):
    generator = FakeGenerator(error=NetworkError("LLM unreachable"))
    orchestrator = make_orchestrator(FakeRecognizer([track]), publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    enriched = publisher.tracks[-1]
    assert len(enriched.prompts) == 1
    assert "LLM unreachable" in enriched.prompts[0]
    assert orchestrator.state is CycleState.LISTENING
    await orchestrator.stop()


async def test_identical_track_skips_generation(publisher, track):
    generator = FakeGenerator()
    recognizer = FakeRecognizer([track, Track(title="Strobe ", artist="deadmau5")])
    orchestrator = make_orchestrator(recognizer, publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)
    orchestrator.trigger_cycle()
    await wait_for_cycle(orchestrator)

    assert generator.calls == 1
    assert publisher.statuses.count("identified") == 1
    # Republished with the prompts that belong to this track
    assert publisher.tracks[-1].prompts == publisher.tracks[1].prompts
    await orchestrator.stop()


async def test_case_difference_is_a_new_track(publisher):
    generator = FakeGenerator()
    recognizer = FakeRecognizer([Track(title="Song", artist="A"), Track(title="song", artist="A")])
    orchestrator = make_orchestrator(recognizer, publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_for_cycle(orchestrator)
    orchestrator.trigger_cycle()
    await wait_for_cycle(orchestrator)

    assert generator.calls == 2
    assert publisher.statuses.count("identified") == 2
    assert orchestrator.current_track.title == "song"
    assert all(p.startswith("song") for p in orchestrator.current_track.prompts)
    await orchestrator.stop()


async def test_external_track_preempts_and_resets_schedule(publisher, track):
    """Scaled-down version of: interval 300s, external event at t=100s."""
    config = OrchestratorConfig(interval_seconds=0.6, snippet_seconds=0.05, tick_seconds=0.05)
    recognizer = FakeRecognizer([track, None], delay=5)
    capturer = FakeCapturer()
    orchestrator = RecognitionOrchestrator(recognizer, publisher, capturer=capturer, config=config)
    loop = asyncio.get_running_loop()

    await orchestrator.start()
    await wait_until(lambda: orchestrator.state is CycleState.IDENTIFYING)
    await asyncio.sleep(0.2)

    external = Track(title="Windowlicker", artist="Aphex Twin", source="external")
    preempted_at = loop.time()
    task = orchestrator.on_external_track(external)
    assert orchestrator._periodic_timer.remaining() == pytest.approx(0.6, abs=0.05)
    await task

    assert recognizer.outcomes and recognizer.outcomes[0] in (RecognitionCancelled, asyncio.CancelledError)
    assert recognizer.calls == 1
    assert capturer.calls == 0
    assert publisher.tracks == [external]
    assert orchestrator.current_track == external
    assert orchestrator.state is CycleState.LISTENING

    # The next periodic cycle fires one full interval after the external event
    recognizer.delay = 0
    await wait_until(lambda: recognizer.calls == 2, timeout=2.0)
    assert loop.time() - preempted_at >= 0.55
    await orchestrator.stop()


async def test_external_track_while_idle(publisher):
    generator = FakeGenerator(count=2)
    orchestrator = make_orchestrator(FakeRecognizer(), publisher, prompt_generator=generator)

    external = Track(title="Teardrop", artist="Massive Attack", source="external")
    await orchestrator.on_external_track(external)

    assert [t.prompts for t in publisher.tracks] == [(), ("Teardrop visual 1", "Teardrop visual 2")]
    assert orchestrator.state is CycleState.IDLE
    assert orchestrator.seconds_until_next is None
    assert not orchestrator.cycle_active


async def test_external_event_source_subscription(publisher):
    class Source:
        def subscribe(self, callback):
            self.callback = callback

    source = Source()
    orchestrator = make_orchestrator(FakeRecognizer(), publisher, event_source=source)
    await source.callback(Track(title="X", artist="Y", source="external"))
    assert orchestrator.current_track.title == "X"


async def test_stale_commit_discarded(publisher, track):
    orchestrator = make_orchestrator(FakeRecognizer(), publisher)
    orchestrator.publish_test_track(track)

    older = Track(title="Old", artist="Result")
    assert not orchestrator._commit(older, stamp=0.0)
    assert orchestrator.current_track == track


async def test_manual_event_and_ping(publisher):
    orchestrator = make_orchestrator(FakeRecognizer(), publisher)

    assert orchestrator.send_manual_event("  drop incoming  ")
    assert not orchestrator.send_manual_event("   ")
    orchestrator.send_ping()
    assert publisher.sent == [("manual", "drop incoming"), ("test", "ping")]

    unconfigured = make_orchestrator(FakeRecognizer(), FakePublisher(configured=False))
    with pytest.raises(ConfigError):
        unconfigured.send_manual_event("hello")


async def test_status_snapshot(publisher, track):
    orchestrator = make_orchestrator(FakeRecognizer([track]), publisher)
    await orchestrator.start()
    await wait_for_cycle(orchestrator)

    snapshot = orchestrator.status_snapshot()
    assert snapshot["state"] == "listening"
    assert snapshot["running"] is True
    assert snapshot["track"]["title"] == "Strobe"
    assert snapshot["interval_seconds"] == 60.0
    await orchestrator.stop()


async def test_callback_errors_do_not_break_cycle(publisher, track):
    def broken(_):
        raise RuntimeError("observer bug")

    orchestrator = RecognitionOrchestrator(
        FakeRecognizer([track]), publisher, config=FAST,
        on_state_change=broken, on_status=broken, on_track=broken,
    )
    await orchestrator.start()
    await wait_for_cycle(orchestrator)
    assert publisher.tracks == [track]
    await orchestrator.stop()


class StubbornGenerator(FakeGenerator):
    """Generator that finishes its request even when its task is cancelled."""

    async def generate(self, track):
        self.calls += 1
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            await asyncio.sleep(self.delay)
        return [Prompt(text=f"{track.title} visual {i}", number=i) for i in range(1, self.count + 1)]


@pytest.mark.parametrize("generator_class", [FakeGenerator, StubbornGenerator])
async def test_external_track_during_prompt_generation(publisher, generator_class):
    old = Track(title="Old", artist="A")
    new = Track(title="New", artist="B", source="external")
    generator = generator_class(count=2, delay=0.2)
    orchestrator = make_orchestrator(FakeRecognizer([old]), publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_until(lambda: orchestrator.state is CycleState.GENERATING_PROMPTS)
    await orchestrator.on_external_track(new)
    await asyncio.sleep(0.3)

    assert [(t.title, t.prompts) for t in publisher.tracks] == [
        ("Old", ()),
        ("New", ()),
        ("New", ("New visual 1", "New visual 2")),
    ]
    assert orchestrator.current_track.title == "New"
    assert orchestrator.current_track.prompts == ("New visual 1", "New visual 2")
    assert orchestrator.state is CycleState.LISTENING
    await orchestrator.stop()


async def test_stop_during_prompt_generation(publisher, track):
    generator = FakeGenerator(delay=5)
    orchestrator = make_orchestrator(FakeRecognizer([track]), publisher, prompt_generator=generator)

    await orchestrator.start()
    await wait_until(lambda: orchestrator.state is CycleState.GENERATING_PROMPTS)
    await orchestrator.stop()

    assert orchestrator.state is CycleState.IDLE
    assert not orchestrator.cycle_active
    assert orchestrator.states_seen[-2:] == [CycleState.CANCELLED, CycleState.IDLE]
    assert [t.prompts for t in publisher.tracks] == [()]
    assert publisher.statuses[-1] == "stopped"
    assert orchestrator.current_track.prompts == ()
    assert generator.calls == 1


async def test_prompts_for_replaced_track_are_discarded(publisher):
    orchestrator = make_orchestrator(FakeRecognizer(), publisher)
    old = Track(title="Old", artist="A")
    new = Track(title="New", artist="B")

    assert orchestrator._commit(old, stamp=5.0)
    assert orchestrator._commit(new, stamp=5.0)
    assert not orchestrator._commit(old.with_prompts(["Old visual 1"]), stamp=5.0, same_as_current=True)
    assert orchestrator._commit(new.with_prompts(["New visual 1"]), stamp=5.0, same_as_current=True)
    assert orchestrator.current_track.prompts == ("New visual 1",)
