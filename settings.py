"""
VJSync Settings Manager
Handles dynamic configuration management using settings.json
"""

import json
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from logging_config import get_logger

logger = get_logger(__name__)

ROOT_DIR = Path(__file__).parent

# Allow overriding the settings file location via environment variable
SETTINGS_FILE = Path(os.getenv("VJSYNC_SETTINGS_FILE", str(ROOT_DIR / "settings.json")))

DEFAULT_LLM_INSTRUCTIONS = (
    "2. **Visual Concepts:** From the information gathered, derive the mood, imagery, "
    "colour palette and cultural references of the track.\n"
    "3. **Prompt Writing:** Write 10 distinct, detailed image prompts optimised for "
    "Stable Diffusion 1.5. Each prompt must stand on its own, describe a single scene, "
    "and include style, lighting and composition keywords. Vary the scenes while "
    "keeping the set artistically coherent."
)


@dataclass
class Setting:
    """Represents a single configurable setting"""
    name: str
    type: type
    default: Any
    requires_restart: bool = False
    category: Optional[str] = None
    description: Optional[str] = None
    options: Optional[list] = None  # For select
    min_val: Optional[float] = None
    max_val: Optional[float] = None

    def validate_and_convert(self, value: Any) -> Any:
        try:
            if value is None:
                return self.default
            if self.type == bool and isinstance(value, str):
                return value.lower() in ('true', '1', 'yes', 'on')
            converted = self.type(value)
            if self.options and converted not in self.options:
                logger.warning(f"Invalid value '{value}' for {self.name}, using default")
                return self.default
            if self.min_val is not None and converted < self.min_val:
                return self.type(self.min_val)
            if self.max_val is not None and converted > self.max_val:
                return self.type(self.max_val)
            return converted
        except (ValueError, TypeError):
            return self.default


class SettingsManager:
    def __init__(self, settings_file: Path = SETTINGS_FILE):
        self._settings_file = Path(settings_file)
        self._settings: Dict[str, Any] = {}

        # Define all available settings
        self._definitions = {
            # Debug
            "debug.log_file": Setting("Log File", str, "vjsync.log", True, "Debug", "Log file name"),
            "debug.log_level": Setting("Log Level", str, "INFO", True, "Debug", "Logging verbosity", options=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
            "debug.log_to_console": Setting("Log to Console", bool, True, False, "Debug", "Print logs to terminal"),
            "debug.log_detailed": Setting("Detailed Logging", bool, False, False, "Debug", "Write DEBUG records to the log file"),
            "debug.log_providers": Setting("Log Providers", bool, True, False, "Debug", "Log LLM provider requests"),
            "debug.log_rotation.max_bytes": Setting("Max Log Size", int, 1048576, False, "Debug", "Max log file size (bytes)"),
            "debug.log_rotation.backup_count": Setting("Log Backups", int, 10, False, "Debug", "Number of backups to keep"),

            # Recognition
            "recognition.provider": Setting("Recognition Provider", str, "audd", True, "Recognition", "Song identification service", options=["audd", "acrcloud"]),
            "recognition.interval_minutes": Setting("Recognition Interval", int, 5, False, "Recognition", "Minutes between identifications", min_val=1, max_val=60),
            "recognition.snippet_seconds": Setting("Snippet Duration", float, None, False, "Recognition", "Listening window in seconds (blank = 7 for AudD, 12 for ACRCloud)", min_val=3.0, max_val=30.0),
            "recognition.device_id": Setting("Device ID", int, None, False, "Recognition", "Audio input device ID (blank = default)"),
            "recognition.device_name": Setting("Device Name", str, "", False, "Recognition", "Preferred input device name"),

            # Prompt generation
            "llm.provider": Setting("LLM Provider", str, "none", True, "Prompts", "Language model used for prompts", options=["none", "deepseek", "groq", "gemini", "chatgpt"]),
            "llm.instructions": Setting("LLM Instructions", str, DEFAULT_LLM_INSTRUCTIONS, False, "Prompts", "Customizable instruction block"),
            "llm.timeout": Setting("LLM Timeout", int, 60, False, "Prompts", "Request timeout (s)", min_val=5, max_val=300),

            # OSC
            "osc.host": Setting("OSC Host", str, "127.0.0.1", False, "OSC", "Receiver host"),
            "osc.port": Setting("OSC Port", int, 9000, False, "OSC", "Receiver port", min_val=0, max_val=65535),
            "osc.address_prefix": Setting("OSC Prefix", str, "/vjsync", True, "OSC", "Address namespace for every message"),
            "osc.listen_enabled": Setting("OSC Input", bool, False, True, "OSC", "Accept external track events"),
            "osc.listen_port": Setting("OSC Listen Port", int, 9001, True, "OSC", "Port for external track events", min_val=1, max_val=65535),
        }

        self.load_settings()

    def load_settings(self) -> None:
        """Load settings from JSON, fall back to defaults"""
        self._settings = {}

        # 1. Load defaults first
        for key, definition in self._definitions.items():
            self._settings[key] = definition.default

        # 2. Load from JSON if exists
        if not self._settings_file.exists():
            return

        try:
            with open(self._settings_file, 'r', encoding='utf-8') as f:
                saved = json.load(f)
            for key, val in saved.items():
                if key in self._definitions:
                    self._settings[key] = self._definitions[key].validate_and_convert(val)
                else:
                    # Store as-is if unknown
                    self._settings[key] = val
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self._settings_file.name}: {e} - resetting to defaults")
            backup_path = self._settings_file.with_suffix('.json.corrupted')
            try:
                shutil.copy2(self._settings_file, backup_path)
                logger.info(f"Backed up corrupted settings to {backup_path}")
            except OSError as copy_error:
                logger.warning(f"Could not back up corrupted settings: {copy_error}")
            self.save_to_config()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value.
        Priority:
        1. Loaded value (from JSON or Schema Default)
        2. Provided 'default' argument (if key unknown)
        """
        if key in self._settings:
            return self._settings[key]
        if key in self._definitions:
            return self._definitions[key].default
        return default

    def set(self, key: str, value: Any) -> bool:
        """Set a known key. Returns True if the change requires a restart."""
        if key not in self._definitions:
            return False

        setting = self._definitions[key]
        self._settings[key] = setting.validate_and_convert(value)
        return setting.requires_restart

    def save_to_config(self) -> None:
        """Save current memory settings to JSON file"""
        temp_path = self._settings_file.parent / f"settings_{uuid.uuid4().hex}.json.tmp"
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self._settings, f, indent=4, sort_keys=True)
            # Atomic replace (works on both Windows and Unix)
            os.replace(temp_path, self._settings_file)
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")
            if temp_path.exists():
                temp_path.unlink()

    def get_all(self) -> Dict[str, Dict[str, Any]]:
        """Return settings grouped by category"""
        result: Dict[str, Dict[str, Any]] = {}
        for key, defin in self._definitions.items():
            cat = defin.category or "Misc"
            result.setdefault(cat, {})[key] = {
                "value": self._settings.get(key, defin.default),
                "name": defin.name,
                "description": defin.description,
                "type": defin.type.__name__,
                "requires_restart": defin.requires_restart,
                "options": defin.options,
                "min": defin.min_val,
                "max": defin.max_val,
            }
        return result

    def reset_to_defaults(self) -> None:
        if self._settings_file.exists():
            self._settings_file.unlink()
        self.load_settings()


settings = SettingsManager()
