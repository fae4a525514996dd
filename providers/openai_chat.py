"""ChatGPT prompt generator (OpenAI chat completions, JSON mode)"""

from typing import Any, Dict, List, Tuple

from .base import SYSTEM_MESSAGE, ChatCompletionsGenerator


class ChatGPTGenerator(ChatCompletionsGenerator):
    name = "chatgpt"
    API_URL = "https://api.openai.com/v1/chat/completions"
    MODEL = "gpt-4o"

    def messages(self, full_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_MESSAGE},
            {"role": "user", "content": full_prompt},
        ]

    def build_request(self, full_prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url, headers, body = super().build_request(full_prompt)
        body["response_format"] = {"type": "json_object"}
        return url, headers, body
