"""
config/settings.py — Luna Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - Sub-model field validators reject out-of-range values at parse time
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects the LUNA_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_WHISPER_DEVICES = {"cpu", "cuda", "auto"}

MIN_SPEECH_RATE = 0.5
MAX_SPEECH_RATE = 2.0


def _looks_like_locale(v: str) -> bool:
    parts = v.replace("_", "-").split("-")
    return len(parts) == 2 and parts[0].isalpha() and parts[1].isalpha()


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class LLMConfig(BaseModel):
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    top_p: float = 0.8
    top_k: int = 40
    max_output_tokens: int = 1024
    timeout_seconds: float = 30.0
    max_input_chars: int = 4000
    unhealthy_error_threshold: int = 10

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("top_p")
    @classmethod
    def _valid_top_p(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("llm.top_p must be in (0.0, 1.0]")
        return v

    @field_validator("top_k", "max_output_tokens", "max_input_chars")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.top_k, llm.max_output_tokens and llm.max_input_chars must be >= 1")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("llm.timeout_seconds must be > 0")
        return v

    @field_validator("unhealthy_error_threshold")
    @classmethod
    def _non_negative_threshold(cls, v: int) -> int:
        if v < 0:
            raise ValueError("llm.unhealthy_error_threshold must be >= 0")
        return v


class CaptureConfig(BaseModel):
    enabled: bool = True
    primary_locale: str = "hi-IN"
    secondary_locale: str = "en-US"
    silence_timeout_seconds: float = 1.5
    whisper_model: str = "small"
    whisper_device: str = "cpu"
    sample_rate: int = 16000
    vad_aggressiveness: int = 2
    pause_duration_ms: int = 600
    interim_interval_ms: int = 1000
    mic_device_index: Optional[int] = None

    @field_validator("primary_locale", "secondary_locale")
    @classmethod
    def _valid_locale(cls, v: str) -> str:
        if not _looks_like_locale(v):
            raise ValueError(f"capture locale '{v}' must look like 'hi-IN' or 'en-US'")
        return v.replace("_", "-")

    @field_validator("silence_timeout_seconds")
    @classmethod
    def _positive_silence(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("capture.silence_timeout_seconds must be > 0")
        return v

    @field_validator("whisper_device")
    @classmethod
    def _valid_device(cls, v: str) -> str:
        if v not in _VALID_WHISPER_DEVICES:
            raise ValueError(
                f"capture.whisper_device must be one of {sorted(_VALID_WHISPER_DEVICES)}, got '{v}'"
            )
        return v

    @field_validator("sample_rate")
    @classmethod
    def _vad_sample_rate(cls, v: int) -> int:
        # webrtcvad only accepts these
        if v not in (8000, 16000, 32000, 48000):
            raise ValueError("capture.sample_rate must be 8000, 16000, 32000 or 48000")
        return v

    @field_validator("vad_aggressiveness")
    @classmethod
    def _valid_aggressiveness(cls, v: int) -> int:
        if not (0 <= v <= 3):
            raise ValueError("capture.vad_aggressiveness must be between 0 and 3")
        return v

    @field_validator("pause_duration_ms", "interim_interval_ms")
    @classmethod
    def _positive_ms(cls, v: int) -> int:
        if v < 30:
            raise ValueError("capture.pause_duration_ms and capture.interim_interval_ms must be >= 30")
        return v


class SpeechConfig(BaseModel):
    enabled: bool = True
    voices_dir: str = "~/.local/share/piper"
    preferred_language: str = "en-IN"
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    mute_debounce_seconds: float = 0.5

    @field_validator("rate")
    @classmethod
    def _valid_rate(cls, v: float) -> float:
        if not (MIN_SPEECH_RATE <= v <= MAX_SPEECH_RATE):
            raise ValueError(f"speech.rate must be between {MIN_SPEECH_RATE} and {MAX_SPEECH_RATE}")
        return v

    @field_validator("pitch")
    @classmethod
    def _valid_pitch(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("speech.pitch must be between 0.0 and 2.0")
        return v

    @field_validator("volume")
    @classmethod
    def _valid_volume(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("speech.volume must be between 0.0 and 1.0")
        return v

    @field_validator("mute_debounce_seconds")
    @classmethod
    def _non_negative_debounce(cls, v: float) -> float:
        if v < 0:
            raise ValueError("speech.mute_debounce_seconds must be >= 0")
        return v


class StorageConfig(BaseModel):
    data_dir: str = "./data/sessions"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 20
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Luna runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -- Secrets from .env ---------------------------------------------------
    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_KEY", "API_KEY", "gemini_api_key"),
    )

    # -- Structured config (from config.yaml) --------------------------------
    llm: LLMConfig = Field(default_factory=LLMConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("gemini_api_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("capture", mode="before")
    @classmethod
    def _coerce_capture(cls, v: Any) -> Any:
        return CaptureConfig(**v) if isinstance(v, dict) else v

    @field_validator("speech", mode="before")
    @classmethod
    def _coerce_speech(cls, v: Any) -> Any:
        return SpeechConfig(**v) if isinstance(v, dict) else v

    @field_validator("storage", mode="before")
    @classmethod
    def _coerce_storage(cls, v: Any) -> Any:
        return StorageConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level

    @property
    def data_dir(self) -> Path:
        return Path(self.storage.data_dir).expanduser()

    # -- Startup validation --------------------------------------------------

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Called once at startup in main.py bootstrap() before any subsystem
        initialises. Field validators catch type/value errors at parse time;
        this method catches the missing credential and cross-field problems.
        """
        errors: list[str] = []

        # ── Gemini API key ───────────────────────────────────────────────────
        if not self.gemini_api_key:
            errors.append(
                "GEMINI_API_KEY is not set. Add it to your .env file "
                "(get a key at https://aistudio.google.com/app/apikey)."
            )

        # ── Locales ──────────────────────────────────────────────────────────
        if self.capture.primary_locale == self.capture.secondary_locale:
            errors.append(
                f"capture.primary_locale and capture.secondary_locale are both "
                f"'{self.capture.primary_locale}'; the fallback would never change anything."
            )

        # ── Endpointing vs. recognizer pause ─────────────────────────────────
        if self.capture.pause_duration_ms / 1000 > self.capture.silence_timeout_seconds * 4:
            errors.append(
                "capture.pause_duration_ms is far longer than "
                "capture.silence_timeout_seconds; utterances would end late."
            )

        # ── Storage directory ────────────────────────────────────────────────
        data_dir = self.data_dir
        if data_dir.exists() and not data_dir.is_dir():
            errors.append(f"storage.data_dir '{data_dir}' exists and is not a directory.")

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nLuna startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"llm", "capture", "speech", "storage", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. LUNA_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("LUNA_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    return Settings(**init_kwargs)

