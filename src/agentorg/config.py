"""Runtime settings for agentorg, read from AGENTORG_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

EXECUTION_MODES = ("inline", "queued")
DEPTH_MODES = ("transitive", "per_hop")

# Model tier -> preferred model. "auto" leaves the choice to the model client.
DEFAULT_MODEL_TIERS = {
    "fast": "gpt-4o-mini",
    "balanced": "gpt-4o",
    "premium": "o3",
}


@dataclass
class Settings:
    """Process-wide configuration."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".agentorg")
    max_turns: int = 10
    history_limit: int = 10
    default_context_tokens: int = 2000
    default_max_tokens: int = 4096
    default_temperature: float = 0.7
    execution_mode: str = "inline"  # inline, queued
    depth_mode: str = "transitive"  # transitive, per_hop
    model_base_url: str = "https://api.openai.com/v1"
    model_api_key: str = ""
    model_timeout: float = 120.0
    default_model: str = "gpt-4o"
    model_tiers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODEL_TIERS))
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self) -> None:
        if self.execution_mode not in EXECUTION_MODES:
            raise ValueError(
                f"execution_mode must be one of {EXECUTION_MODES}, got {self.execution_mode!r}"
            )
        if self.depth_mode not in DEPTH_MODES:
            raise ValueError(f"depth_mode must be one of {DEPTH_MODES}, got {self.depth_mode!r}")
        if self.max_turns < 1:
            raise ValueError(f"max_turns must be >= 1, got {self.max_turns}")

    @property
    def db_path(self) -> Path:
        return self.data_dir / "data" / "agentorg.db"

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from AGENTORG_* environment variables."""
        env = os.environ
        defaults = cls()
        return cls(
            data_dir=Path(env["AGENTORG_DATA_DIR"]) if "AGENTORG_DATA_DIR" in env else defaults.data_dir,
            max_turns=int(env.get("AGENTORG_MAX_TURNS", defaults.max_turns)),
            history_limit=int(env.get("AGENTORG_HISTORY_LIMIT", defaults.history_limit)),
            default_context_tokens=int(
                env.get("AGENTORG_CONTEXT_TOKENS", defaults.default_context_tokens)
            ),
            default_max_tokens=int(env.get("AGENTORG_MAX_TOKENS", defaults.default_max_tokens)),
            default_temperature=float(
                env.get("AGENTORG_TEMPERATURE", defaults.default_temperature)
            ),
            execution_mode=env.get("AGENTORG_EXECUTION_MODE", defaults.execution_mode),
            depth_mode=env.get("AGENTORG_DEPTH_MODE", defaults.depth_mode),
            model_base_url=env.get("AGENTORG_MODEL_BASE_URL", defaults.model_base_url),
            model_api_key=env.get("AGENTORG_MODEL_API_KEY", env.get("OPENAI_API_KEY", "")),
            model_timeout=float(env.get("AGENTORG_MODEL_TIMEOUT", defaults.model_timeout)),
            default_model=env.get("AGENTORG_DEFAULT_MODEL", defaults.default_model),
            log_level=env.get("AGENTORG_LOG_LEVEL", defaults.log_level),
            log_format=env.get("AGENTORG_LOG_FORMAT", defaults.log_format),
        )
