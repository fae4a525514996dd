"""
AudD Recognition Module

Request/response identification: the recorded snippet is uploaded as a
WAV file together with the API token, and the returned Apple Music /
Spotify metadata is mapped into a Track.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from errors import ApiError, InvalidResponse, NetworkError, ParsingError, RecognitionTimeout
from logging_config import get_logger
from models import Track
from system_utils.helpers import run_in_daemon_executor, truncate

from .base import Recognizer
from .capture import Snippet

logger = get_logger(__name__)

ARTWORK_SIZE = 300


@dataclass(frozen=True)
class AudDCredentials:
    api_token: str = ""

    def is_valid(self) -> bool:
        return bool(self.api_token and self.api_token.strip())


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_audd_result(result: Dict[str, Any]) -> Track:
    """
    Map the "result" object of an AudD response to a Track.

    Genre comes from Apple Music (first genre name) falling back to
    Spotify; tempo/energy/danceability from Spotify audio features; the
    artwork from the Spotify album, else the Apple Music template URL
    sized to 300x300.
    """
    apple = result.get("apple_music") or {}
    spotify = result.get("spotify") or {}

    genre = _first(apple.get("genreNames")) or _first(spotify.get("genres"))

    features = spotify.get("audio_features") or {}
    bpm = _as_float(features.get("tempo"))
    energy = _as_float(features.get("energy"))
    danceability = _as_float(features.get("danceability"))

    artwork_url = None
    album_image = _first((spotify.get("album") or {}).get("images"))
    if isinstance(album_image, dict):
        artwork_url = album_image.get("url")
    if not artwork_url:
        template = (apple.get("artwork") or {}).get("url")
        if template:
            artwork_url = template.replace("{w}", str(ARTWORK_SIZE)).replace("{h}", str(ARTWORK_SIZE))

    return Track(
        title=result.get("title"),
        artist=result.get("artist"),
        album=result.get("album"),
        release_date=result.get("release_date"),
        genre=genre,
        bpm=bpm,
        energy=energy,
        danceability=danceability,
        artwork_url=artwork_url,
        source="audd",
    )


class AudDRecognizer(Recognizer):
    """Identifies a pre-recorded snippet through the AudD REST API."""

    name = "audd"
    needs_snippet = True

    API_URL = "https://api.audd.io/"
    RETURN_FIELDS = "apple_music,spotify"
    REQUEST_TIMEOUT = 30

    def __init__(self, credentials: AudDCredentials, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        super().__init__()
        self.credentials = credentials
        self._session = session or requests.Session()
        self._timeout = timeout

        if credentials.is_valid():
            logger.info("AudD recognizer initialized")
        else:
            logger.debug("AudD not configured (missing AUDD_API_TOKEN)")

    def has_valid_credentials(self) -> bool:
        return self.credentials.is_valid()

    async def _run(self, duration_seconds: float, snippet: Optional[Snippet]) -> Optional[Track]:
        wav_bytes = snippet.to_wav_bytes()
        logger.debug(f"Sending snippet to AudD ({len(wav_bytes) / 1024:.1f} KB, {snippet.duration:.1f}s)...")
        status_code, body = await run_in_daemon_executor(self._post, wav_bytes)
        track = self.handle_response(status_code, body)
        if track is None:
            logger.info("AudD: no match")
        else:
            logger.info(f"AudD recognized: {track}")
        return track

    def _post(self, wav_bytes: bytes):
        """Blocking upload, runs in the worker executor."""
        data = {
            "api_token": self.credentials.api_token,
            "return": self.RETURN_FIELDS,
        }
        files = {"file": ("snippet.wav", wav_bytes, "audio/wav")}
        try:
            response = self._session.post(self.API_URL, data=data, files=files, timeout=self._timeout)
        except requests.exceptions.Timeout as e:
            raise RecognitionTimeout(f"AudD request timed out after {self._timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"AudD request failed: {e}", e) from e
        return response.status_code, response.text

    @staticmethod
    def handle_response(status_code: int, body: Optional[str]) -> Optional[Track]:
        """
        Interpret an AudD HTTP response.

        Returns:
            Track, or None when AudD reports success without a result

        Raises:
            InvalidResponse: non-2xx status or empty body
            ParsingError: body is not a JSON object
            ApiError: AudD reported an error status
        """
        if not 200 <= status_code < 300:
            raise InvalidResponse(status_code)
        if not body:
            raise InvalidResponse(status_code, "Empty response from AudD")

        try:
            payload = json.loads(body)
        except (ValueError, RecursionError) as e:
            raise ParsingError(f"Failed to decode AudD response: {truncate(body)}") from e
        if not isinstance(payload, dict):
            raise ParsingError(f"Unexpected AudD response: {truncate(body)}")

        if payload.get("status") != "success":
            error = payload.get("error") or {}
            message = error.get("error_message") or "Unknown error"
            code = error.get("error_code")
            raise ApiError(f"{message} (Code: {code})" if code is not None else message)

        result = payload.get("result")
        if not isinstance(result, dict):
            return None
        return parse_audd_result(result)
