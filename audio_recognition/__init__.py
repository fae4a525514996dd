"""
Audio Recognition Module for VJSync

Snippet capture, the Recognizer contract with its AudD (upload) and
ACRCloud (streaming) variants, and the orchestrator that runs the
capture -> identify -> generate -> publish cycle.
"""

from enum import Enum
from typing import Optional

from .acrcloud import ACRCloudCredentials, ACRCloudRecognizer
from .audd import AudDCredentials, AudDRecognizer
from .base import Recognizer
from .capture import Snippet, SnippetCapturer
from .engine import CycleState, OrchestratorConfig, RecognitionOrchestrator
from .scheduler import ScheduleState, Scheduler


class RecognizerProvider(Enum):
    AUDD = "audd"
    ACRCLOUD = "acrcloud"


def create_recognizer(provider: RecognizerProvider, credentials, device_id: Optional[int] = None) -> Recognizer:
    """
    Build the Recognizer for a provider tag.

    Args:
        provider: Selected provider
        credentials: AudDCredentials or ACRCloudCredentials matching the provider
        device_id: Input device for streaming providers (None = system default)
    """
    if provider is RecognizerProvider.AUDD:
        return AudDRecognizer(credentials)
    if provider is RecognizerProvider.ACRCLOUD:
        return ACRCloudRecognizer(credentials, device_id=device_id)
    raise ValueError(f"Unknown recognizer provider: {provider}")


__all__ = [
    'ACRCloudCredentials',
    'ACRCloudRecognizer',
    'AudDCredentials',
    'AudDRecognizer',
    'CycleState',
    'OrchestratorConfig',
    'RecognitionOrchestrator',
    'Recognizer',
    'RecognizerProvider',
    'ScheduleState',
    'Scheduler',
    'Snippet',
    'SnippetCapturer',
    'create_recognizer',
]
