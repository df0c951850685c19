"""
Call relay configuration.

Loads from environment variables (and a local .env) with sensible defaults.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv


def _strip_env(key: str) -> Optional[str]:
    """
    Read an env var, stripping trailing comments and whitespace.

    "2000  # every two seconds" -> "2000"
    """
    value = os.environ.get(key)
    if value is None:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _strip_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _strip_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_list_env(key: str, default: List[str]) -> List[str]:
    value = _strip_env(key)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _mask(value: str) -> str:
    return f"Set (length: {len(value)})" if value else "Not set"


@dataclass
class RelayConfig:
    """Call relay configuration."""

    host: str = "0.0.0.0"
    port: int = 3000

    # Voice platform credentials (only the voice client factory needs them)
    project_id: str = ""
    token: str = ""
    space_url: str = ""
    phone_number: str = ""
    public_url: str = ""
    topics: List[str] = field(default_factory=lambda: ["office", "default"])

    # Reconciliation timing
    sweep_interval_ms: int = 2000
    webhook_stale_seconds: int = 300
    audio_output_delay_ms: int = 1000
    # Most recent ended ids remembered to suppress repeat `callEnded`; an id
    # evicted from this window is announced again if it ends again.
    ended_call_memory: int = 1000

    # "package.module:callable" returning a connected voice client
    voice_client_factory: str = ""

    log_level: str = "INFO"
    log_json: bool = True

    @property
    def webhook_url(self) -> str:
        base = self.public_url or f"http://localhost:{self.port}"
        return f"{base.rstrip('/')}/webhook/status"

    def masked(self) -> Dict[str, str]:
        """Configuration view that never exposes credentials."""
        return {
            "project": _mask(self.project_id),
            "token": _mask(self.token),
            "space_url": self.space_url or "Not set",
            "phone_number": self.phone_number or "Not set",
            "public_url": self.public_url or "Not set",
            "webhook_url": self.webhook_url,
        }

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load configuration from environment variables."""
        load_dotenv()
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_parse_int_env("PORT", 3000),
            project_id=os.environ.get("PROJECT_ID", ""),
            token=os.environ.get("TOKEN", ""),
            space_url=os.environ.get("SPACE_URL", ""),
            phone_number=os.environ.get("PHONE_NUMBER", ""),
            public_url=os.environ.get("PUBLIC_URL", ""),
            topics=_parse_list_env("CALL_TOPICS", ["office", "default"]),
            sweep_interval_ms=_parse_int_env("SWEEP_INTERVAL_MS", 2000),
            webhook_stale_seconds=_parse_int_env("WEBHOOK_STALE_SECONDS", 300),
            audio_output_delay_ms=_parse_int_env("AUDIO_OUTPUT_DELAY_MS", 1000),
            ended_call_memory=_parse_int_env("ENDED_CALL_MEMORY", 1000),
            voice_client_factory=os.environ.get("VOICE_CLIENT_FACTORY", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_json=_parse_bool_env("LOG_JSON", True),
        )


def get_config() -> RelayConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = RelayConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[RelayConfig] = None
