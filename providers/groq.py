"""Groq prompt generator (OpenAI-compatible endpoint)"""

from typing import Optional

import requests

from .base import ChatCompletionsGenerator


class GroqGenerator(ChatCompletionsGenerator):
    name = "groq"
    API_URL = "https://api.groq.com/openai/v1/chat/completions"
    MODEL = "llama-3.1-8b-instant"
    MAX_TOKENS = 1100

    def error_message(self, response: requests.Response) -> Optional[str]:
        # Groq reports rate limits and bad requests as {"error": {"message": ...}}
        try:
            data = response.json()
        except ValueError:
            return "Unknown error"
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        return "Unknown error"
