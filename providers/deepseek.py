"""DeepSeek prompt generator (OpenAI-style chat completions)"""

from .base import ChatCompletionsGenerator


class DeepSeekGenerator(ChatCompletionsGenerator):
    name = "deepseek"
    API_URL = "https://api.deepseek.com/v1/chat/completions"
    MODEL = "deepseek-chat"
