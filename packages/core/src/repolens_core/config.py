import os
from pathlib import Path
from typing import Optional

import yaml

KNOWN_AGENTS = ("architecture", "security", "bugs")
KNOWN_PROVIDERS = ("anthropic", "openai")

DEFAULT_CONFIG: dict = {
    "model": "anthropic",
    "model_name": None,  # None = provider default
    "agents": list(KNOWN_AGENTS),
    "max_turns": 200,
    "forced_tool_turns": 3,
    "thinking": True,
    "confidence_rounds": 2,
    "confidence_round_turns": 10,
    "challenge": True,
    "explain": True,
    "pattern_scan_timeout": 30,
    "exec_timeout": 10,
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*_pb2.py")
    "store_path": "~/.repolens/repolens.db",
}


def load_config(config_path: str = ".repolens.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .repolens.yml in the current directory
      3. CLI argument overrides
    """
    config = {
        **DEFAULT_CONFIG,
        "exclude": list(DEFAULT_CONFIG["exclude"]),
        "agents": list(DEFAULT_CONFIG["agents"]),
    }

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")
    config["brave_api_key"] = os.environ.get("BRAVE_SEARCH_API_KEY")

    return config


def validate_config(config: dict) -> None:
    """Raise ValueError for settings that would only fail later, mid-run."""
    if config.get("model") not in KNOWN_PROVIDERS:
        raise ValueError(f"Unknown model provider: {config.get('model')!r}. Choose 'anthropic' or 'openai'.")

    for key in ("max_turns", "confidence_round_turns", "pattern_scan_timeout", "exec_timeout"):
        value = config.get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{key} must be a positive number, got {value!r}")

    for key in ("forced_tool_turns", "confidence_rounds"):
        value = config.get(key)
        if not isinstance(value, int) or value < 0:
            raise ValueError(f"{key} must be a non-negative integer, got {value!r}")

    unknown = [a for a in config.get("agents") or [] if a not in KNOWN_AGENTS]
    if unknown:
        raise ValueError(f"Unknown agent(s): {', '.join(unknown)}. Choose from {', '.join(KNOWN_AGENTS)}.")
    if not config.get("agents"):
        raise ValueError("At least one agent must be selected.")


def resolve_store_path(config: dict) -> str:
    return os.path.expanduser(config.get("store_path") or DEFAULT_CONFIG["store_path"])
