from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from core.paths import CONFIG_PATH

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

DEFAULT_CONFIG = {
    "foundry_executable": "foundry",
    "command_prefix": [],
    "api_key": "",
    "default_models": ["llama3.1", "phi-3.5", "qwen2.5"],
    "default_model": "",
    "temperature": 0.7,
    "max_tokens": 2048,
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "settle_delay_seconds": 3.0,
    "status_timeout_seconds": 10.0,
    "health_timeout_seconds": 5.0,
    "chat_timeout_seconds": 300.0,
    "max_edit_distance": 3,
    "min_substring_length": 5,
    "telemetry_interval_seconds": 1.0,
    "vendor_poll_seconds": 2.0,
}


@dataclass(frozen=True)
class FoundryConfig:
    foundry_executable: str = "foundry"
    command_prefix: tuple[str, ...] = ()
    api_key: str = ""
    default_models: tuple[str, ...] = ()
    default_model: str = ""
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    settle_delay_seconds: float = 3.0
    status_timeout_seconds: float = 10.0
    health_timeout_seconds: float = 5.0
    chat_timeout_seconds: float = 300.0
    max_edit_distance: int = 3
    min_substring_length: int = 5
    telemetry_interval_seconds: float = 1.0
    vendor_poll_seconds: float = 2.0
    extra: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> "FoundryConfig":
        values = DEFAULT_CONFIG.copy()
        values.update(data or {})
        prefix = values.get("command_prefix") or []
        if isinstance(prefix, str):
            prefix = prefix.split()
        defaults = values.get("default_models") or []
        if not isinstance(defaults, list):
            raise ValueError("default_models must be a list of aliases")
        try:
            return cls(
                foundry_executable=str(values["foundry_executable"] or "foundry"),
                command_prefix=tuple(str(part) for part in prefix),
                api_key=str(values.get("api_key") or ""),
                default_models=tuple(str(alias) for alias in defaults if str(alias).strip()),
                default_model=str(values.get("default_model") or ""),
                temperature=float(values["temperature"]),
                max_tokens=int(values["max_tokens"]),
                system_prompt=str(values.get("system_prompt") or DEFAULT_SYSTEM_PROMPT),
                settle_delay_seconds=float(values["settle_delay_seconds"]),
                status_timeout_seconds=float(values["status_timeout_seconds"]),
                health_timeout_seconds=float(values["health_timeout_seconds"]),
                chat_timeout_seconds=float(values["chat_timeout_seconds"]),
                max_edit_distance=int(values["max_edit_distance"]),
                min_substring_length=int(values["min_substring_length"]),
                telemetry_interval_seconds=float(values["telemetry_interval_seconds"]),
                vendor_poll_seconds=float(values["vendor_poll_seconds"]),
                extra={k: v for k, v in values.items() if k not in DEFAULT_CONFIG},
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid configuration value: {exc}") from exc

    def to_dict(self) -> dict:
        data = {
            "foundry_executable": self.foundry_executable,
            "command_prefix": list(self.command_prefix),
            "api_key": self.api_key,
            "default_models": list(self.default_models),
            "default_model": self.default_model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "system_prompt": self.system_prompt,
            "settle_delay_seconds": self.settle_delay_seconds,
            "status_timeout_seconds": self.status_timeout_seconds,
            "health_timeout_seconds": self.health_timeout_seconds,
            "chat_timeout_seconds": self.chat_timeout_seconds,
            "max_edit_distance": self.max_edit_distance,
            "min_substring_length": self.min_substring_length,
            "telemetry_interval_seconds": self.telemetry_interval_seconds,
            "vendor_poll_seconds": self.vendor_poll_seconds,
        }
        data.update(self.extra)
        return data


def load_config(path: Path | None = None) -> FoundryConfig:
    path = path or CONFIG_PATH
    data = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
                if isinstance(raw, dict):
                    data = raw
        except (OSError, ValueError):
            data = {}
    return FoundryConfig.from_dict(data)


def save_config(config: FoundryConfig, path: Path | None = None) -> Path:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(config.to_dict(), handle, indent=2)
    return path


def load_or_create_config(path: Path | None = None) -> FoundryConfig:
    path = path or CONFIG_PATH
    config = load_config(path)
    if not path.exists():
        save_config(config, path)
    return config
