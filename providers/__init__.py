"""
Prompt Generator Providers Package
Language-model backends that turn track metadata into image prompts.
"""

from enum import Enum
from typing import Optional

from .base import LLMCredentials, PromptGenerator, parse_prompts
from .deepseek import DeepSeekGenerator
from .gemini import GeminiGenerator
from .groq import GroqGenerator
from .openai_chat import ChatGPTGenerator


class LLMProvider(Enum):
    NONE = "none"
    DEEPSEEK = "deepseek"
    GROQ = "groq"
    GEMINI = "gemini"
    CHATGPT = "chatgpt"


# Provider tag -> backend class
available_generators = {
    LLMProvider.DEEPSEEK: DeepSeekGenerator,
    LLMProvider.GROQ: GroqGenerator,
    LLMProvider.GEMINI: GeminiGenerator,
    LLMProvider.CHATGPT: ChatGPTGenerator,
}


def create_prompt_generator(provider: LLMProvider, credentials: LLMCredentials,
                            instructions: Optional[str] = None,
                            timeout: float = PromptGenerator.DEFAULT_TIMEOUT) -> PromptGenerator:
    """Build the PromptGenerator for a provider tag (LLMProvider.NONE has none)."""
    if provider not in available_generators:
        raise ValueError(f"No prompt generator for provider: {provider.value}")
    return available_generators[provider](credentials, instructions=instructions, timeout=timeout)


__all__ = [
    'ChatGPTGenerator',
    'DeepSeekGenerator',
    'GeminiGenerator',
    'GroqGenerator',
    'LLMCredentials',
    'LLMProvider',
    'PromptGenerator',
    'available_generators',
    'create_prompt_generator',
    'parse_prompts',
]
