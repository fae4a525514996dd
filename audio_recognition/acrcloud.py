"""
ACRCloud Recognition Module

Streaming identification: a session keeps the input device open with a
short pre-record buffer, listens for the requested window and then
submits the signed sample. The vendor result is pushed back to the
recognizer from the worker thread; a failsafe (window + 5s) settles the
pending identification if nothing ever arrives.
"""

import asyncio
import base64
import collections
import hashlib
import hmac
import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
import requests

try:
    import sounddevice as sd
except (ImportError, OSError):  # OSError for missing PortAudio library
    sd = None

from errors import ApiError, CaptureError, NetworkError, ParsingError, RecognitionError, RecognitionTimeout
from logging_config import get_logger
from models import Track
from system_utils.helpers import submit_to_daemon_executor, truncate

from .base import SHAPE_ERRORS, Recognizer
from .capture import Snippet

logger = get_logger(__name__)

ARTWORK_SIZE = "300x300"
STATUS_SUCCESS = 0
STATUS_NO_RESULT = 1001

# on_result(payload_text, error): exactly one of the two is set
ResultCallback = Callable[[Optional[str], Optional[BaseException]], None]


@dataclass(frozen=True)
class ACRCloudCredentials:
    host: str = ""
    access_key: str = ""
    access_secret: str = ""

    def is_valid(self) -> bool:
        return all(value and value.strip() for value in (self.host, self.access_key, self.access_secret))


def create_signature(access_key: str, access_secret: str, timestamp: str) -> str:
    """Create HMAC-SHA1 signature for ACRCloud API."""
    http_method = "POST"
    http_uri = "/v1/identify"
    data_type = "audio"
    signature_version = "1"

    string_to_sign = f"{http_method}\n{http_uri}\n{access_key}\n{data_type}\n{signature_version}\n{timestamp}"

    return base64.b64encode(
        hmac.new(
            access_secret.encode('ascii'),
            string_to_sign.encode('ascii'),
            digestmod=hashlib.sha1
        ).digest()
    ).decode('ascii')


def parse_acrcloud_response(body: str) -> Optional[Track]:
    """
    Interpret an ACRCloud identify response.

    Status code 0 yields the first music match, 1001 means no match,
    anything else is an ApiError "<msg> (Code: <code>)".
    """
    try:
        payload = json.loads(body)
    except (TypeError, ValueError, RecursionError) as e:
        raise ParsingError(f"Failed to decode ACRCloud response: {truncate(body)}") from e

    status = payload.get("status") if isinstance(payload, dict) else None
    if not isinstance(status, dict):
        raise ParsingError(f"ACRCloud response without status: {truncate(body)}")

    code = status.get("code")
    if code == STATUS_NO_RESULT:
        return None
    if code != STATUS_SUCCESS:
        raise ApiError(f"{status.get('msg', 'Unknown error')} (Code: {code})")

    try:
        music = (payload.get("metadata") or {}).get("music") or []
        return _track_from_music(music[0]) if music else None
    except SHAPE_ERRORS as e:
        raise ParsingError(f"Unexpected ACRCloud result shape: {e}") from e


def _track_from_music(match: Dict[str, Any]) -> Track:
    artists = match.get("artists") or []
    artist = artists[0].get("name") if artists else None
    genres = match.get("genres") or []
    genre = genres[0].get("name") if genres else None
    album = (match.get("album") or {}).get("name")

    external = match.get("external_metadata") or {}
    artwork_url = None
    images = ((external.get("spotify") or {}).get("album") or {}).get("images") or []
    if images:
        artwork_url = images[0].get("url")
    if not artwork_url:
        template = ((external.get("applemusic") or {}).get("artwork") or {}).get("url")
        if template:
            artwork_url = template.replace("{w}x{h}", ARTWORK_SIZE)

    bpm = match.get("bpm")
    return Track(
        title=match.get("title"),
        artist=artist,
        album=album,
        release_date=match.get("release_date"),
        genre=genre,
        bpm=float(bpm) if isinstance(bpm, (int, float)) and not isinstance(bpm, bool) else None,
        artwork_url=artwork_url,
        source="acrcloud",
    )


class StreamingSession(ABC):
    """
    One recording/recognition session driven by ACRCloudRecognizer.

    start_prerecord() opens the device and keeps a rolling buffer,
    start_recognition() marks the start of the window, stop_recognition()
    ends it and submits the sample; the outcome is delivered once through
    the callback (from any thread). close() stops everything and
    suppresses further callbacks. All methods must be idempotent.
    """

    @abstractmethod
    def start_prerecord(self, seconds: float) -> None: ...

    @abstractmethod
    def start_recognition(self, on_result: ResultCallback) -> None: ...

    @abstractmethod
    def stop_recognition(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class DeviceStreamingSession(StreamingSession):
    """
    StreamingSession recording from a sounddevice input stream and posting
    the sample to https://<host>/v1/identify.
    """

    SAMPLE_RATE = 16000
    CHANNELS = 1
    REQUEST_TIMEOUT = 30

    def __init__(self, credentials: ACRCloudCredentials, device_id: Optional[int] = None):
        self.credentials = credentials
        self.device_id = None if device_id == -1 else device_id
        self._lock = threading.Lock()
        self._prerecord: collections.deque = collections.deque()
        self._window: list = []
        self._prerecord_frames = 0
        self._recognizing = False
        self._stream = None
        self._on_result: Optional[ResultCallback] = None
        self._closed = False
        self._capture_start = 0.0

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"ACRCloud input status: {status}")
        chunk = indata.copy()
        with self._lock:
            if self._recognizing:
                self._window.append(chunk)
                return
            self._prerecord.append(chunk)
            buffered = sum(len(c) for c in self._prerecord)
            while self._prerecord and buffered - len(self._prerecord[0]) >= self._prerecord_frames:
                buffered -= len(self._prerecord.popleft())

    def start_prerecord(self, seconds: float) -> None:
        if self._stream is not None or self._closed:
            return
        if sd is None:
            raise CaptureError("sounddevice not available")
        self._prerecord_frames = int(seconds * self.SAMPLE_RATE)
        try:
            self._stream = sd.InputStream(samplerate=self.SAMPLE_RATE, channels=self.CHANNELS,
                                          device=self.device_id, dtype='int16',
                                          callback=self._audio_callback)
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise CaptureError(f"Could not open input device: {e}") from e
        logger.debug(f"ACRCloud pre-record started ({seconds:.0f}s buffer)")

    def start_recognition(self, on_result: ResultCallback) -> None:
        with self._lock:
            self._on_result = on_result
            self._window = list(self._prerecord)
            self._recognizing = True
            self._capture_start = time.time()

    def stop_recognition(self) -> None:
        with self._lock:
            if not self._recognizing:
                return
            self._recognizing = False
            chunks, self._window = self._window, []
        self._stop_stream()
        if not chunks:
            self._deliver(None, CaptureError("No audio recorded"))
            return
        snippet = Snippet(data=np.concatenate(chunks), sample_rate=self.SAMPLE_RATE,
                          channels=self.CHANNELS, duration=sum(len(c) for c in chunks) / self.SAMPLE_RATE,
                          capture_start_time=self._capture_start)
        submit_to_daemon_executor(self._submit, snippet.to_wav_bytes())

    def _submit(self, wav_bytes: bytes) -> None:
        """Blocking signed upload, runs in the worker executor."""
        timestamp = str(int(time.time()))
        files = {
            'sample': ('audio.wav', wav_bytes, 'audio/wav'),
        }
        data = {
            'access_key': self.credentials.access_key,
            'data_type': 'audio',
            'signature_version': '1',
            'signature': create_signature(self.credentials.access_key, self.credentials.access_secret, timestamp),
            'sample_bytes': len(wav_bytes),
            'timestamp': timestamp,
        }
        url = f"https://{self.credentials.host}/v1/identify"
        logger.debug(f"Sending to ACRCloud ({len(wav_bytes) / 1024:.1f} KB)...")
        try:
            response = requests.post(url, files=files, data=data, timeout=self.REQUEST_TIMEOUT)
        except requests.exceptions.Timeout:
            self._deliver(None, RecognitionTimeout("ACRCloud request timed out"))
            return
        except requests.exceptions.RequestException as e:
            self._deliver(None, NetworkError(f"ACRCloud request failed: {e}", e))
            return
        self._deliver(response.text, None)

    def _deliver(self, payload: Optional[str], error: Optional[BaseException]) -> None:
        with self._lock:
            callback, self._on_result = self._on_result, None
            closed = self._closed
        if callback is not None and not closed:
            callback(payload, error)

    def _stop_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.debug(f"Error closing ACRCloud input stream: {e}")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._recognizing = False
            self._on_result = None
            self._prerecord.clear()
            self._window = []
        self._stop_stream()


class ACRCloudRecognizer(Recognizer):
    """Streaming identification through ACRCloud."""

    name = "acrcloud"
    needs_snippet = False
    push_style = True

    PRERECORD_SECONDS = 3.0
    FAILSAFE_GRACE = 5.0

    def __init__(self, credentials: ACRCloudCredentials, device_id: Optional[int] = None,
                 session_factory: Optional[Callable[[ACRCloudCredentials], StreamingSession]] = None):
        """
        Args:
            credentials: ACRCloud project host and access keys
            device_id: Input device for the default session (None = system default)
            session_factory: Builds the StreamingSession for each identification
        """
        super().__init__()
        self.credentials = credentials
        self._session_factory = session_factory or (
            lambda creds: DeviceStreamingSession(creds, device_id=device_id)
        )
        self._session: Optional[StreamingSession] = None

        if credentials.is_valid():
            logger.info(f"ACRCloud initialized (host: {credentials.host})")
        else:
            logger.debug("ACRCloud not configured (missing credentials in .env)")

    def has_valid_credentials(self) -> bool:
        return self.credentials.is_valid()

    def failsafe_timeout(self, duration_seconds: float) -> Optional[float]:
        return duration_seconds + self.FAILSAFE_GRACE

    async def _run(self, duration_seconds: float, snippet: Optional[Snippet]) -> Optional[Track]:
        loop = asyncio.get_running_loop()
        pending = self._pending

        def on_result(payload: Optional[str], error: Optional[BaseException]) -> None:
            try:
                loop.call_soon_threadsafe(self._on_session_result, pending, payload, error)
            except RuntimeError:
                logger.debug("ACRCloud result arrived after the event loop closed")

        session = self._session_factory(self.credentials)
        self._session = session
        try:
            session.start_prerecord(self.PRERECORD_SECONDS)
        except CaptureError as e:
            raise RecognitionError(str(e)) from e
        session.start_recognition(on_result)
        logger.debug(f"ACRCloud listening for {duration_seconds:.1f}s")

        await asyncio.sleep(duration_seconds)
        if not pending.done():
            session.stop_recognition()
        return None

    def _on_session_result(self, pending: asyncio.Future, payload: Optional[str],
                           error: Optional[BaseException]) -> None:
        if pending.done():
            logger.debug("ACRCloud: late result ignored")
            return
        if error is not None:
            if not isinstance(error, RecognitionError):
                error = RecognitionError(str(error))
            self._fail(pending, error)
            return
        if payload is None:
            self._fail(pending, ParsingError("Empty ACRCloud result"))
            return
        try:
            track = parse_acrcloud_response(payload)
        except RecognitionError as e:
            self._fail(pending, e)
            return
        if track is None:
            logger.info("ACRCloud: no match")
        else:
            logger.info(f"ACRCloud recognized: {track}")
        self._resolve(pending, track)

    def _end_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.close()
