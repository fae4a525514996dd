"""Pytest configuration and shared fakes for the orchestrator collaborators"""
import asyncio
import time
from typing import List, Optional

import numpy as np
import pytest

from audio_recognition.base import Recognizer
from audio_recognition.capture import Snippet
from errors import CaptureError
from models import Prompt, Track
from providers.base import LLMCredentials, PromptGenerator


def make_snippet(duration: float = 0.1, sample_rate: int = 8000) -> Snippet:
    return Snippet(
        data=np.zeros((int(duration * sample_rate), 1), dtype=np.int16),
        sample_rate=sample_rate,
        channels=1,
        duration=duration,
        capture_start_time=time.time(),
    )


class FakeRecognizer(Recognizer):
    """Recognizer returning queued results (Track, None or an exception to raise)."""

    name = "fake"

    def __init__(self, results=None, needs_snippet: bool = False, valid: bool = True, delay: float = 0.0):
        super().__init__()
        self.needs_snippet = needs_snippet
        self.results = list(results or [])
        self.valid = valid
        self.delay = delay
        self.calls = 0
        self.snippets: List[Optional[Snippet]] = []
        self.outcomes: List[type] = []

    def has_valid_credentials(self) -> bool:
        return self.valid

    async def identify(self, duration_seconds, snippet=None):
        try:
            return await super().identify(duration_seconds, snippet)
        except BaseException as e:
            self.outcomes.append(type(e))
            raise

    async def _run(self, duration_seconds, snippet):
        self.calls += 1
        self.snippets.append(snippet)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else None
        if isinstance(result, BaseException):
            raise result
        return result


class FakeCapturer:
    def __init__(self, delay: float = 0.0, error: Optional[Exception] = None):
        self.delay = delay
        self.error = error
        self.calls = 0
        self.cancels = 0

    async def record_snippet(self, duration: float = 7.0) -> Snippet:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return make_snippet()

    def cancel(self) -> None:
        self.cancels += 1


class FakePublisher:
    def __init__(self, configured: bool = True):
        self.configured = configured
        self.sent = []

    def is_configured(self) -> bool:
        return self.configured

    def send_track(self, track: Track) -> None:
        self.sent.append(("track", track))

    def send_status(self, status: str) -> None:
        self.sent.append(("status", status))

    def send_manual(self, text: str) -> None:
        self.sent.append(("manual", text))

    def send_ping(self) -> None:
        self.sent.append(("test", "ping"))

    @property
    def tracks(self) -> List[Track]:
        return [value for kind, value in self.sent if kind == "track"]

    @property
    def statuses(self) -> List[str]:
        return [value for kind, value in self.sent if kind == "status"]


class FakeGenerator(PromptGenerator):
    """PromptGenerator whose generate() returns canned prompts or raises."""

    name = "fake"

    def __init__(self, error: Optional[Exception] = None, count: int = 3, delay: float = 0.0):
        super().__init__(LLMCredentials(api_key="test-key"))
        self.error = error
        self.count = count
        self.delay = delay
        self.calls = 0

    def build_request(self, full_prompt):
        raise AssertionError("FakeGenerator never builds HTTP requests")

    def extract_text(self, data):
        return None

    async def generate(self, track: Track) -> List[Prompt]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return [
            Prompt(text=f"{track.title} visual {i}", number=i, parameters=track.parameters())
            for i in range(1, self.count + 1)
        ]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until it is true or fail the test after timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def track():
    return Track(title="Strobe", artist="deadmau5", genre="Progressive House",
                 bpm=128.0, energy=0.8, danceability=0.6, source="audd")


@pytest.fixture
def publisher():
    return FakePublisher()
