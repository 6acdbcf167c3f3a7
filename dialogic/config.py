from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

from dialogic.utils.io import read_text

DEFAULTS_PATH = Path(__file__).resolve().parent / "configs" / "settings.yaml"

SECRET_ENV_VARS: Dict[str, tuple] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "ollama": ("OLLAMA_HOST",),
}


@dataclass
class ModelConfig:
    chat: str
    validate: Optional[str] = None


@dataclass
class Settings:
    data_dir: Path
    max_turns: int = 2
    recent_reports: int = 3
    max_output_tokens: int = 4096
    fallback_snippet_chars: int = 100
    ollama_host: str = "http://localhost:11434"
    models: Dict[str, ModelConfig] = field(default_factory=dict)

    def chat_model(self, provider: str) -> str:
        return self.models[provider].chat

    def validation_model(self, provider: str) -> str:
        config = self.models[provider]
        return config.validate or config.chat


def _load_yaml(path: Path) -> Dict:
    try:
        data = yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid settings file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping.")
    return data


def _merge(base: Dict, override: Dict) -> Dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(raw: Dict) -> Dict:
    env_map = {
        "DIALOGIC_HOME": ("data_dir", str),
        "DIALOGIC_MAX_TURNS": ("max_turns", int),
        "DIALOGIC_RECENT_REPORTS": ("recent_reports", int),
        "DIALOGIC_MAX_OUTPUT_TOKENS": ("max_output_tokens", int),
        "OLLAMA_HOST": ("ollama_host", str),
    }
    for env_key, (field_name, cast) in env_map.items():
        value = os.getenv(env_key)
        if value:
            raw[field_name] = cast(value)
    models = raw.setdefault("models", {})
    for provider in SECRET_ENV_VARS:
        value = os.getenv(f"{provider.upper()}_MODEL")
        if value:
            models.setdefault(provider, {})["chat"] = value
    return raw


def load_settings(path: Optional[Path] = None, use_dotenv: bool = True) -> Settings:
    if use_dotenv:
        load_dotenv()
    raw = _load_yaml(DEFAULTS_PATH)
    user_path = path or (Path(os.environ["DIALOGIC_CONFIG"]) if os.getenv("DIALOGIC_CONFIG") else None)
    if user_path is not None:
        raw = _merge(raw, _load_yaml(Path(user_path)))
    raw = _apply_env(raw)

    models = {
        name: ModelConfig(chat=str(spec["chat"]), validate=spec.get("validate"))
        for name, spec in (raw.get("models") or {}).items()
        if isinstance(spec, dict) and spec.get("chat")
    }
    return Settings(
        data_dir=Path(str(raw.get("data_dir", "~/.dialogic"))).expanduser(),
        max_turns=int(raw.get("max_turns", 2)),
        recent_reports=int(raw.get("recent_reports", 3)),
        max_output_tokens=int(raw.get("max_output_tokens", 4096)),
        fallback_snippet_chars=int(raw.get("fallback_snippet_chars", 100)),
        ollama_host=str(raw.get("ollama_host", "http://localhost:11434")),
        models=models,
    )


def secret_from_env(provider: str) -> Optional[str]:
    for env_key in SECRET_ENV_VARS.get(provider, ()):
        value = os.getenv(env_key)
        if value:
            return value
    return None
