"""
Track and prompt value types shared by the recognizers, the prompt
generators, the OSC bridge and the orchestrator.

Values are immutable: collaborators build new instances, only the
orchestrator decides which one is "current".
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Optional, Tuple

MAX_PROMPTS = 10


@dataclass(frozen=True)
class Prompt:
    """
    One generated image prompt.

    Attributes:
        text: Prompt text as returned by the language model
        number: 1-based position inside the prompt set
        parameters: Numeric track parameters used to generate it
                    (bpm, energy, danceability, optionally prompt_number)
        timestamp: Unix timestamp of generation
    """
    text: str
    number: int
    parameters: Dict[str, float] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Track:
    """
    Identified song descriptor.

    Identity for deduplication is the trimmed, case-sensitive
    (title, artist) pair, see same_track().
    """
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    release_date: Optional[str] = None
    genre: Optional[str] = None
    bpm: Optional[float] = None
    energy: Optional[float] = None
    danceability: Optional[float] = None
    artwork_url: Optional[str] = None
    prompts: Tuple[str, ...] = ()
    source: str = "unknown"
    identified_at: float = field(default_factory=time.time)

    @property
    def identity(self) -> Tuple[str, str]:
        return ((self.title or "").strip(), (self.artist or "").strip())

    def same_track(self, other: Optional['Track']) -> bool:
        """True if other is the same song (exact match after trimming)."""
        if other is None:
            return False
        return self.identity == other.identity

    def with_prompts(self, prompts: Iterable[Any]) -> 'Track':
        """
        Return a copy of this track carrying the given prompts.

        Accepts Prompt objects or plain strings; only the first ten are kept.
        """
        texts = tuple(
            p.text if isinstance(p, Prompt) else str(p)
            for p in prompts
        )[:MAX_PROMPTS]
        return replace(self, prompts=texts)

    def without_prompts(self) -> 'Track':
        return replace(self, prompts=())

    def parameters(self) -> Dict[str, float]:
        """Numeric parameters attached to generated prompts (missing values as 0)."""
        return {
            "bpm": float(self.bpm or 0),
            "energy": float(self.energy or 0),
            "danceability": float(self.danceability or 0),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "release_date": self.release_date,
            "genre": self.genre,
            "bpm": self.bpm,
            "energy": self.energy,
            "danceability": self.danceability,
            "artwork_url": self.artwork_url,
            "prompts": list(self.prompts),
            "source": self.source,
        }

    def __str__(self) -> str:
        return f"{self.artist or 'Unknown'} - {self.title or 'Unknown'}"
