"""App configuration: loads environment variables and validates required settings.

Usage:
    from zewail.config import config
    print(config.model_endpoint)
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_TRUTHY = {"1", "true", "yes", "on"}


def _find_env_file() -> Path | None:
    """Search for .env file starting from the project directory, then up."""
    current = Path(__file__).resolve().parent.parent.parent  # project root (src/..)
    candidates = [
        current / ".env",
        current.parent / ".env",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    # OpenAI-compatible Responses endpoint (local: http://localhost:8088)
    model_endpoint: str
    model_name: str

    # Re-inject citation markers on every streamed chunk
    live_citations: bool

    # Cosmos DB: search history
    cosmos_endpoint: str
    cosmos_database_name: str
    cosmos_container_name: str


def _load_config() -> Config:
    """Load and validate configuration from environment."""
    env_file = _find_env_file()
    if env_file:
        load_dotenv(env_file, override=False)

    required = {
        "MODEL_ENDPOINT": "model_endpoint",
    }

    missing = [var for var in required if not os.environ.get(var)]
    if missing:
        print(
            f"Error: Missing required environment variables: {', '.join(missing)}\n"
            f"Copy .env.sample to .env and fill in values.",
            file=sys.stderr,
        )
        sys.exit(1)

    return Config(
        model_endpoint=os.environ["MODEL_ENDPOINT"],
        model_name=os.environ.get("MODEL_NAME", "gpt-4.1"),
        live_citations=os.environ.get("LIVE_CITATIONS", "true").strip().lower() in _TRUTHY,
        cosmos_endpoint=os.environ.get("COSMOS_ENDPOINT", ""),
        cosmos_database_name=os.environ.get("COSMOS_DATABASE_NAME", "zewail"),
        cosmos_container_name=os.environ.get("COSMOS_CONTAINER_NAME", "search_history"),
    )


# Singleton: imported as `from zewail.config import config`
config = _load_config()
