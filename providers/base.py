"""
Base Prompt Generator Class
All language-model backends must inherit from this base class.

A generator composes one request text from three segments (role/context
preamble, the user's instruction block, the strict output format), sends
it with the backend's own JSON shape, and hands the returned text to the
shared defensive parser.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from errors import ApiError, InvalidResponse, MissingCredentials, NetworkError, RecognitionTimeout
from logging_config import get_logger
from models import MAX_PROMPTS, Prompt, Track
from settings import DEFAULT_LLM_INSTRUCTIONS
from system_utils.helpers import run_in_daemon_executor, truncate

logger = get_logger(__name__)

SYSTEM_MESSAGE = (
    "You are an expert AI assistant that helps create detailed prompt descriptions "
    "for AI image generation based on music tracks. You have the ability to browse "
    "the web to gather information."
)

EXCERPT_LENGTH = 100


@dataclass(frozen=True)
class LLMCredentials:
    api_key: str = ""

    def is_valid(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


def level_string(value: Optional[float]) -> str:
    """Bucket a 0-1 value into low / medium / high (N/A when absent)."""
    if value is None:
        return "N/A"
    if value < 0.33:
        return "low"
    if value < 0.66:
        return "medium"
    return "high"


def compose_preamble(track: Track) -> str:
    title = track.title or "Unknown"
    artist = track.artist or "Unknown"
    bpm = f"{track.bpm:.0f}" if track.bpm is not None else "N/A"
    return (
        "**Role:** You are an expert AI assistant specializing in musical information research "
        "and creative visual concept generation for VJing. Your goal is to create image prompts "
        "for Stable Diffusion 1.5.\n"
        "\n"
        "**Context:** These prompts will be used to generate real-time visuals projected behind "
        "a DJ while they are playing a specific track. The visuals must be deeply connected to "
        "the essence of the track.\n"
        "\n"
        "**Input Information:**\n"
        "\n"
        f"* Track Title: {title}\n"
        f"* Artist: {artist}\n"
        f"* Music Genre: {track.genre or 'Unknown'}\n"
        f"* (Optional) BPM: {bpm}\n"
        f"* (Optional) Energy (e.g., low, medium, high): {level_string(track.energy)}\n"
        f"* (Optional) Danceability (e.g., low, medium, high): {level_string(track.danceability)}\n"
        "\n"
        "**Detailed Instructions:**\n"
        "\n"
        f"1. **Deep Web Research:** Using your web search capabilities, gather as much relevant "
        f"information as possible about the track \"{title}\" by {artist}."
    )


def compose_output_format(track: Track) -> str:
    title = track.title or "Unknown"
    artist = track.artist or "Unknown"

    def entry(number: int, text: str) -> str:
        return (
            "    {\n"
            f"      \"track\": \"{title}\",\n"
            f"      \"artist\": \"{artist}\",\n"
            f"      \"prompt_number\": {number},\n"
            f"      \"prompt\": \"{text}\"\n"
            "    }"
        )

    return (
        "**Strict Output Format:** Your response MUST be ONLY a valid JSON object. Do NOT include "
        "ANY text before or after the JSON (no introduction, explanation, greeting, list of sources, "
        "or keywords outside the JSON). The exact JSON structure must be:\n"
        "\n"
        "{\n"
        "  \"prompts\": [\n"
        + entry(1, "Your generated prompt number 1 here, detailed and stylized for Stable Diffusion 1.5...")
        + ",\n"
        + entry(2, "Your generated prompt number 2 here, different from the first but artistically coherent...")
        + ",\n"
        "    // ... Repeat for prompts 3 through 9 ...\n"
        + entry(10, "Your generated prompt number 10 here, completing the set with a relevant variation...")
        + "\n  ]\n}"
    )


def compose_request(track: Track, instructions: str) -> str:
    """Join preamble, instruction block and output format with blank lines."""
    return "\n\n".join([compose_preamble(track), instructions, compose_output_format(track)])


def clean_json_response(text: str) -> str:
    """Keep the substring from the first '{' to the last '}' (stray prose removed)."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        return text
    return text[start:end + 1]


def fallback_prompt(track: Track, message: str) -> Prompt:
    return Prompt(text=message, number=1, parameters=track.parameters())


def parse_prompts(raw: Optional[str], track: Track) -> List[Prompt]:
    """
    Parse a model response into prompts.

    Never raises: undecodable or empty responses yield a single diagnostic
    prompt carrying the error and an excerpt of the raw text.
    """
    raw = raw or ""
    excerpt = truncate(raw, EXCERPT_LENGTH)
    try:
        data = json.loads(clean_json_response(raw))
        entries = data.get("prompts") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ValueError("Invalid JSON response format")
    except (ValueError, RecursionError) as e:
        logger.warning(f"Could not parse prompts: {e}")
        return [fallback_prompt(track, f"Processing error: {e}. Raw response: {excerpt}...")]

    prompts: List[Prompt] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        text = entry.get("prompt")
        number = entry.get("prompt_number")
        if not isinstance(text, str) or not isinstance(number, int) or isinstance(number, bool):
            continue
        parameters = track.parameters()
        parameters["prompt_number"] = float(number)
        prompts.append(Prompt(text=text, number=len(prompts) + 1, parameters=parameters))
        if len(prompts) == MAX_PROMPTS:
            break

    if not prompts:
        logger.warning("Model response contained no valid prompts")
        return [fallback_prompt(track, f"No prompts generated. LLM response: {excerpt}...")]
    return prompts


class PromptGenerator(ABC):
    """Base class for all language-model backends."""

    name = "base"
    MODEL = ""
    TEMPERATURE = 0.85
    MAX_TOKENS = 1500
    DEFAULT_TIMEOUT = 60

    def __init__(self, credentials: LLMCredentials, instructions: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        """
        Args:
            credentials: API key for the backend
            instructions: Customizable instruction block (default used when empty)
            timeout: HTTP timeout in seconds
            session: Optional requests session (shared connection pool)
        """
        self.credentials = credentials
        self.instructions = instructions or DEFAULT_LLM_INSTRUCTIONS
        self.timeout = timeout
        self.session = session or requests.Session()

        if credentials.is_valid():
            logger.info(f"Initialized {self.name} prompt generator (model: {self.MODEL})")
        else:
            logger.info(f"{self.name} prompt generator has no API key")

    def has_valid_credentials(self) -> bool:
        return self.credentials.is_valid()

    @abstractmethod
    def build_request(self, full_prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, json_body) for the backend."""

    @abstractmethod
    def extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        """Pull the generated text out of the backend's response JSON."""

    def error_message(self, response: requests.Response) -> Optional[str]:
        """Message for a non-2xx response (None = generic)."""
        return None

    def compose_request(self, track: Track) -> str:
        return compose_request(track, self.instructions)

    async def generate(self, track: Track) -> List[Prompt]:
        """
        Generate up to ten prompts for a track.

        Raises:
            MissingCredentials, NetworkError, RecognitionTimeout,
            InvalidResponse, ApiError: the request itself failed.
            Malformed model output never raises (see parse_prompts).
        """
        if not self.has_valid_credentials():
            raise MissingCredentials(f"{self.name} API key is missing")
        full_prompt = self.compose_request(track)
        logger.info(f"Requesting prompts from {self.name} for {track}")
        text = await run_in_daemon_executor(self._complete, full_prompt)
        prompts = parse_prompts(text, track)
        logger.info(f"{self.name} returned {len(prompts)} prompt(s)")
        return prompts

    def _complete(self, full_prompt: str) -> str:
        """Blocking request, runs in the worker executor."""
        url, headers, body = self.build_request(full_prompt)
        try:
            response = self.session.post(url, headers=headers, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise RecognitionTimeout(f"{self.name} request timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{self.name} request failed: {e}", e) from e

        if not 200 <= response.status_code < 300:
            message = self.error_message(response)
            if message:
                raise ApiError(f"{self.name}: {message}")
            raise InvalidResponse(response.status_code, f"{self.name} API error (Code: {response.status_code})")

        try:
            data = response.json()
        except ValueError:
            # Let the parser produce the diagnostic prompt from the raw body
            return response.text
        text = self.extract_text(data) if isinstance(data, dict) else None
        return text if text is not None else response.text

    def diagnostic_prompt(self, track: Track, error: BaseException) -> Prompt:
        """Placeholder prompt published when generation itself failed."""
        return fallback_prompt(track, f"Prompt generation failed ({self.name}): {error}")

    async def test_connection(self) -> List[Prompt]:
        """Run a full generation for a dummy track."""
        dummy = Track(title="Test", artist="Test", genre="Test", bpm=120, energy=0.8,
                      danceability=0.7, source="test")
        return await self.generate(dummy)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name='{self.name}' model='{self.MODEL}'>"


class ChatCompletionsGenerator(PromptGenerator):
    """Backends speaking the OpenAI-style /chat/completions protocol."""

    API_URL = ""

    def messages(self, full_prompt: str) -> List[Dict[str, str]]:
        return [{"role": "user", "content": full_prompt}]

    def build_request(self, full_prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.credentials.api_key}",
        }
        body = {
            "model": self.MODEL,
            "messages": self.messages(full_prompt),
            "temperature": self.TEMPERATURE,
            "max_tokens": self.MAX_TOKENS,
        }
        return self.API_URL, headers, body

    def extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        return (choices[0].get("message") or {}).get("content")
