"""Google Gemini prompt generator (generateContent)"""

from typing import Any, Dict, Optional, Tuple

from .base import SYSTEM_MESSAGE, PromptGenerator


class GeminiGenerator(PromptGenerator):
    name = "gemini"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    MODEL = "gemini-1.5-flash"
    TOP_P = 0.95

    def build_request(self, full_prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{self.BASE_URL}/{self.MODEL}:generateContent?key={self.credentials.api_key}"
        headers = {"Content-Type": "application/json"}
        body = {
            "contents": [
                {"role": "user", "parts": [{"text": full_prompt}]},
            ],
            "generationConfig": {
                "temperature": self.TEMPERATURE,
                "maxOutputTokens": self.MAX_TOKENS,
                "topP": self.TOP_P,
            },
            "systemInstruction": {
                "parts": [{"text": SYSTEM_MESSAGE}],
            },
        }
        return url, headers, body

    def extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts or not isinstance(parts[0], dict):
            return None
        return parts[0].get("text")
