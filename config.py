"""
VJSync Configuration Loader
Loads values from settings.json via the settings manager, secrets from the environment.
"""
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from settings import settings

ROOT_DIR = Path(__file__).parent

VERSION = "1.0.0"

# Only load .env if it exists
env_file = ROOT_DIR / '.env'
if env_file.exists():
    load_dotenv(env_file)


# Helper to prefer Env Var > Settings JSON > Default
def conf(key: str, default: Any = None) -> Any:
    # 1. Check Env Var (Highest Priority - good for docker/dev)
    env_val = os.getenv(key.upper().replace('.', '_'))
    if env_val is not None:
        return env_val

    # 2. Check Settings JSON
    json_val = settings.get(key)
    if json_val is not None:
        return json_val

    # 3. Default
    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _as_int_or_none(value: Any) -> Optional[int]:
    # Env vars arrive as strings; blank means "not set"
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(value)


# ==========================================
# EXPORTED CONFIG DICTS
# ==========================================

DEBUG = {
    "log_file": conf("debug.log_file", "vjsync.log"),
    "log_level": conf("debug.log_level", "INFO"),
    "log_to_console": _as_bool(conf("debug.log_to_console", True)),
    "log_detailed": _as_bool(conf("debug.log_detailed", False)),
    "log_providers": _as_bool(conf("debug.log_providers", True)),
    "log_rotation": {
        "max_bytes": int(conf("debug.log_rotation.max_bytes", 1048576)),
        "backup_count": int(conf("debug.log_rotation.backup_count", 10)),
    },
}

RECOGNITION = {
    "provider": conf("recognition.provider", "audd"),
    "interval_minutes": int(conf("recognition.interval_minutes", 5)),
    "snippet_seconds": conf("recognition.snippet_seconds"),  # None = provider default
    "device_id": _as_int_or_none(conf("recognition.device_id")),  # None = system default input
    "device_name": conf("recognition.device_name", ""),
}

LLM = {
    "provider": conf("llm.provider", "none"),
    "instructions": conf("llm.instructions", ""),
    "timeout": int(conf("llm.timeout", 60)),
}

OSC = {
    "host": conf("osc.host", "127.0.0.1"),
    "port": int(conf("osc.port", 9000)),
    "address_prefix": conf("osc.address_prefix", "/vjsync"),
    "listen_enabled": _as_bool(conf("osc.listen_enabled", False)),
    "listen_port": int(conf("osc.listen_port", 9001)),
}

# Secrets are only read from the environment (.env), never from settings.json
LLM_API_KEY_VARS = {
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "chatgpt": "OPENAI_API_KEY",
}


# Helper functions
def get_audd_credentials():
    from audio_recognition.audd import AudDCredentials
    return AudDCredentials(api_token=os.getenv("AUDD_API_TOKEN", ""))


def get_acrcloud_credentials():
    from audio_recognition.acrcloud import ACRCloudCredentials
    return ACRCloudCredentials(
        host=os.getenv("ACRCLOUD_HOST", ""),
        access_key=os.getenv("ACRCLOUD_ACCESS_KEY", ""),
        access_secret=os.getenv("ACRCLOUD_ACCESS_SECRET", ""),
    )


def get_llm_credentials(provider: Optional[str] = None):
    from providers.base import LLMCredentials
    name = (provider or LLM["provider"]).lower()
    env_var = LLM_API_KEY_VARS.get(name)
    return LLMCredentials(api_key=os.getenv(env_var, "") if env_var else "")


def build_recognizer():
    """Create the configured Recognizer with its credentials."""
    from audio_recognition import RecognizerProvider, create_recognizer
    provider = RecognizerProvider(RECOGNITION["provider"].lower())
    if provider is RecognizerProvider.AUDD:
        credentials = get_audd_credentials()
    else:
        credentials = get_acrcloud_credentials()
    return create_recognizer(provider, credentials, device_id=RECOGNITION["device_id"])


def build_prompt_generator():
    """Create the configured PromptGenerator, or None when prompts are disabled."""
    from providers import LLMProvider, create_prompt_generator
    provider = LLMProvider(LLM["provider"].lower())
    if provider is LLMProvider.NONE:
        return None
    return create_prompt_generator(
        provider,
        get_llm_credentials(provider.value),
        instructions=LLM["instructions"] or None,
        timeout=LLM["timeout"],
    )


# Listening window per provider when recognition.snippet_seconds is not set
DEFAULT_SNIPPET_SECONDS = {
    "audd": 7.0,
    "acrcloud": 12.0,
}


def build_orchestrator_config():
    from audio_recognition.engine import OrchestratorConfig
    snippet = RECOGNITION["snippet_seconds"]
    if snippet is None:
        snippet = DEFAULT_SNIPPET_SECONDS.get(RECOGNITION["provider"].lower(), 7.0)
    return OrchestratorConfig(
        interval_seconds=RECOGNITION["interval_minutes"] * 60,
        snippet_seconds=float(snippet),
    )
