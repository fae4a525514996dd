"""
Audio Capture Module

Records fixed-duration snippets from an input device using sounddevice.
The blocking device read runs in the worker executor and checks an abort
flag every 100ms, so a capture can be cancelled mid-recording.
"""

import asyncio
import io
import threading
import time
import wave
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

try:
    import sounddevice as sd
except (ImportError, OSError):  # OSError for missing PortAudio library
    sd = None

from errors import CaptureError
from logging_config import get_logger
from system_utils.helpers import run_in_daemon_executor

logger = get_logger(__name__)


@dataclass
class Snippet:
    """
    Raw audio recorded for one recognition attempt.

    Attributes:
        data: Audio samples as numpy array (int16)
        sample_rate: Sample rate in Hz
        channels: Number of audio channels
        duration: Duration of captured audio in seconds
        capture_start_time: Unix timestamp when capture started
    """
    data: np.ndarray
    sample_rate: int
    channels: int
    duration: float
    capture_start_time: float

    def get_max_amplitude(self) -> int:
        """Get the maximum amplitude in the audio (for silence detection)."""
        if self.data.size == 0:
            return 0
        return int(np.max(np.abs(self.data.astype(np.int32))))

    def is_silent(self, threshold: int = 100) -> bool:
        """Check if the audio is silent (below amplitude threshold)."""
        return self.get_max_amplitude() < threshold

    def to_wav_bytes(self) -> bytes:
        """Encode the snippet as an in-memory WAV file (int16 PCM)."""
        buffer = io.BytesIO()
        with wave.open(buffer, 'wb') as wf:
            wf.setnchannels(self.channels)
            wf.setsampwidth(2)  # int16 = 2 bytes per sample
            wf.setframerate(self.sample_rate)
            wf.writeframes(self.data.astype('<i2').tobytes())
        return buffer.getvalue()


class SnippetCapturer:
    """
    Records snippets from a system input device.
    Async-compatible via executor pattern; cancellable through abort().
    """

    DEFAULT_SAMPLE_RATE = 44100
    DEFAULT_CHANNELS = 1
    DEFAULT_DURATION = 7.0
    TIMEOUT_MARGIN = 3.0  # Seconds on top of the duration before giving up

    def __init__(
        self,
        device_id: Optional[int] = None,
        device_name: Optional[str] = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
    ):
        """
        Args:
            device_id: Specific device ID to use (None or -1 = system default)
            device_name: Device name to find (overrides device_id if found)
            sample_rate: Sample rate in Hz
            channels: Number of channels to record
        """
        if device_id == -1:
            device_id = None
        self.device_id = device_id
        self.device_name = device_name
        self.sample_rate = sample_rate
        self.channels = channels
        self._abort_event: Optional[threading.Event] = None
        self._device_lock = threading.Lock()

        if not sd:
            logger.error("sounddevice not installed. Audio capture unavailable.")

    @staticmethod
    def is_available() -> bool:
        """Check if sounddevice (and PortAudio) is available."""
        return sd is not None

    @staticmethod
    def list_devices() -> List[Dict[str, Any]]:
        """List input-capable devices as dicts (id, name, channels, sample rate)."""
        if sd is None:
            return []
        devices = []
        for idx, device in enumerate(sd.query_devices()):
            if device.get('max_input_channels', 0) > 0:
                devices.append({
                    "id": idx,
                    "name": device.get('name', ''),
                    "channels": device.get('max_input_channels', 0),
                    "sample_rate": int(device.get('default_samplerate', 0)),
                })
        return devices

    def _resolve_device(self) -> Optional[int]:
        """Resolve the device ID (priority: name > explicit ID > system default)."""
        if self.device_name:
            wanted = self.device_name.lower()
            for device in self.list_devices():
                if wanted in device["name"].lower():
                    logger.info(f"Resolved device by name '{self.device_name}': ID {device['id']}")
                    return device["id"]
            logger.warning(f"Device '{self.device_name}' not found, falling back")
        return self.device_id

    def abort(self) -> None:
        """Abort the current capture. Safe to call when idle."""
        event = self._abort_event
        if event is not None:
            event.set()

    cancel = abort

    def _blocking_capture(self, duration: float, abort_event: threading.Event) -> Optional[Snippet]:
        """Blocking capture function to run in executor."""
        # One open input stream at a time: an aborted read finishes before the next capture opens
        with self._device_lock:
            if abort_event.is_set():
                return None

            device = self._resolve_device()
            capture_start = time.time()
            total_frames = int(duration * self.sample_rate)
            chunk_size = int(self.sample_rate * 0.1)  # 100ms reads allow frequent abort checks
            frames_read = 0
            data_list = []

            logger.debug(f"Starting capture: device={device}, duration={duration}s, rate={self.sample_rate}")

            with sd.InputStream(samplerate=self.sample_rate,
                                channels=self.channels,
                                device=device,
                                dtype='int16') as stream:
                while frames_read < total_frames:
                    if abort_event.is_set():
                        logger.debug("Capture aborted via flag")
                        return None

                    to_read = min(chunk_size, total_frames - frames_read)
                    chunk_data, overflow = stream.read(to_read)
                    if overflow:
                        logger.debug("Audio input overflow (data lost)")
                    data_list.append(chunk_data)
                    frames_read += to_read

        if not data_list:
            return None

        snippet = Snippet(
            data=np.concatenate(data_list),
            sample_rate=self.sample_rate,
            channels=self.channels,
            duration=duration,
            capture_start_time=capture_start,
        )
        logger.debug(f"Capture complete: max_amplitude={snippet.get_max_amplitude()}")
        return snippet

    async def record_snippet(self, duration: float = DEFAULT_DURATION) -> Snippet:
        """
        Record a snippet of the given duration.

        Each call gets its own abort event; starting a capture also aborts
        any earlier one still reading.

        Raises:
            CaptureError: device unavailable, recording failed, aborted or timed out
            asyncio.CancelledError: the awaiting task was cancelled (capture is aborted too)
        """
        if not sd:
            raise CaptureError("sounddevice not available")

        self.abort()
        abort_event = threading.Event()
        self._abort_event = abort_event

        try:
            snippet = await asyncio.wait_for(
                run_in_daemon_executor(self._blocking_capture, duration, abort_event),
                timeout=duration + self.TIMEOUT_MARGIN,
            )
        except asyncio.CancelledError:
            abort_event.set()
            raise
        except asyncio.TimeoutError:
            abort_event.set()
            raise CaptureError(f"Audio capture timeout after {duration + self.TIMEOUT_MARGIN}s")
        except Exception as e:
            raise CaptureError(f"Audio capture failed: {e}") from e

        if snippet is None:
            raise CaptureError("Audio capture aborted")
        return snippet
