"""
Configuration module for the Vy semantic memory system.

Loads settings from config.yaml and secrets from environment variables.
"""

import contextvars
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Context variable naming the memory service tool currently executing
tool_context = contextvars.ContextVar("tool_name", default=None)


class ToolLogFilter(logging.Filter):
    """Filter to inject the active tool name into log records."""
    def filter(self, record):
        tool_name = tool_context.get()
        if tool_name is not None:
            record.tool_info = f" [{tool_name}]"
        else:
            record.tool_info = ""
        return True


# Default config file path
CONFIG_FILE = Path(os.getenv("VY_CONFIG_FILE", Path(__file__).parent.parent / "config.yaml"))

# Known OpenAI embedding models and their limits
EMBEDDING_MODELS = {
    "text-embedding-3-small": {"dimensions": 1536, "max_tokens": 8192, "batch_size": 100},
    "text-embedding-3-large": {"dimensions": 3072, "max_tokens": 8192, "batch_size": 100},
    "text-embedding-ada-002": {"dimensions": 1536, "max_tokens": 8192, "batch_size": 100},
}


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return _yaml_config.get(section, {}).get(key, default)


def _get_env_or_yaml(env_key: str, section: str, key: str, default=None, cast=None):
    """Environment variable wins over YAML; YAML wins over the default."""
    value = os.getenv(env_key)
    if value is None or value == "":
        return _get_yaml(section, key, default)
    if cast is bool:
        return value.strip().lower() in ("1", "true", "yes")
    if cast is not None:
        return cast(value)
    return value


def _model_default(model: str, key: str) -> int:
    """Look up a per-model limit, falling back to the small model's values."""
    return EMBEDDING_MODELS.get(model, EMBEDDING_MODELS["text-embedding-3-small"])[key]


@dataclass
class ChromaConfig:
    """ChromaDB connection settings."""
    mode: Literal["persistent", "http"] = field(
        default_factory=lambda: _get_env_or_yaml("VY_CHROMA_MODE", "chroma", "mode", "persistent")
    )
    path: str = field(
        default_factory=lambda: _get_env_or_yaml("VY_CHROMA_PATH", "chroma", "path", "./memory_store")
    )
    host: str = field(
        default_factory=lambda: _get_env_or_yaml("VY_CHROMA_HOST", "chroma", "host", "localhost")
    )
    port: int = field(
        default_factory=lambda: _get_env_or_yaml("VY_CHROMA_PORT", "chroma", "port", 8000, cast=int)
    )
    ssl: bool = field(
        default_factory=lambda: _get_env_or_yaml("VY_CHROMA_SSL", "chroma", "ssl", False, cast=bool)
    )
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("VY_CHROMA_API_KEY", ""))
    collection_name: str = field(
        default_factory=lambda: _get_env_or_yaml(
            "VY_COLLECTION_NAME", "chroma", "collection_name", "vy_memories"
        )
    )


@dataclass
class EmbeddingConfig:
    """OpenAI embedding settings."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("VY_OPENAI_API_KEY", ""))
    model: str = field(
        default_factory=lambda: _get_env_or_yaml(
            "VY_EMBEDDING_MODEL", "embedding", "model", "text-embedding-3-small"
        )
    )
    # Override embedding dimensions; None = use model's default dimensions
    dimensions: int | None = field(
        default_factory=lambda: _get_yaml("embedding", "dimensions", None)
    )
    max_tokens: int | None = field(
        default_factory=lambda: _get_yaml("embedding", "max_tokens", None)
    )
    batch_size: int | None = field(
        default_factory=lambda: _get_yaml("embedding", "batch_size", None)
    )

    def __post_init__(self):
        if self.max_tokens is None:
            self.max_tokens = _model_default(self.model, "max_tokens")
        if self.batch_size is None:
            self.batch_size = _model_default(self.model, "batch_size")


@dataclass
class LimitsConfig:
    """Business limits for the memory service."""
    max_conversation_length: int = field(
        default_factory=lambda: _get_env_or_yaml(
            "VY_MAX_CONVERSATION_LENGTH", "limits", "max_conversation_length", 50000, cast=int
        )
    )
    max_search_results: int = field(
        default_factory=lambda: _get_env_or_yaml(
            "VY_MAX_SEARCH_RESULTS", "limits", "max_search_results", 20, cast=int
        )
    )
    max_context_memories: int = field(
        default_factory=lambda: _get_env_or_yaml(
            "VY_MAX_CONTEXT_MEMORIES", "limits", "max_context_memories", 10, cast=int
        )
    )
    # Relevance floors for search and context priming
    default_min_relevance: float = field(
        default_factory=lambda: _get_yaml("limits", "default_min_relevance", 0.7)
    )
    context_min_relevance: float = field(
        default_factory=lambda: _get_yaml("limits", "context_min_relevance", 0.6)
    )
    broad_min_relevance: float = field(
        default_factory=lambda: _get_yaml("limits", "broad_min_relevance", 0.3)
    )
    max_retries: int = field(
        default_factory=lambda: _get_env_or_yaml("VY_MAX_RETRIES", "limits", "max_retries", 3, cast=int)
    )


@dataclass
class FailureTrackingConfig:
    """Where failed embedding records are kept."""
    backend: Literal["memory", "sqlite"] = field(
        default_factory=lambda: _get_yaml("failure_tracking", "backend", "memory")
    )
    db_path: str = field(
        default_factory=lambda: _get_yaml("failure_tracking", "db_path", "failed_embeddings.db")
    )


@dataclass
class AppConfig:
    """Application settings from YAML."""
    log_level: str = field(
        default_factory=lambda: _get_env_or_yaml("VY_LOG_LEVEL", "logging", "level", "INFO")
    )


@dataclass
class Config:
    """Main configuration container."""
    chroma: ChromaConfig = field(default_factory=ChromaConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    failure_tracking: FailureTrackingConfig = field(default_factory=FailureTrackingConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in list(root.handlers):
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(tool_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(ToolLogFilter())

        return logging.getLogger("vy_memory")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if not self.embedding.api_key:
            errors.append("VY_OPENAI_API_KEY is required for OpenAI embeddings")
        if self.embedding.model not in EMBEDDING_MODELS:
            errors.append(
                f"Unsupported embedding model: {self.embedding.model} "
                f"(supported: {', '.join(EMBEDDING_MODELS)})"
            )

        if self.chroma.mode not in ("persistent", "http"):
            errors.append(f"chroma.mode must be 'persistent' or 'http', got '{self.chroma.mode}'")
        if self.chroma.mode == "http":
            if not self.chroma.host:
                errors.append("chroma.host cannot be empty in http mode")
            if not 1 <= self.chroma.port <= 65535:
                errors.append(f"chroma.port must be between 1 and 65535, got {self.chroma.port}")
        if not self.chroma.collection_name or not self.chroma.collection_name.strip():
            errors.append("chroma.collection_name cannot be empty")

        if self.limits.max_conversation_length < 1000:
            errors.append("limits.max_conversation_length must be at least 1000 characters")
        if not 1 <= self.limits.max_search_results <= 100:
            errors.append("limits.max_search_results must be between 1 and 100")
        if not 1 <= self.limits.max_context_memories <= 50:
            errors.append("limits.max_context_memories must be between 1 and 50")
        if self.limits.max_retries < 0:
            errors.append("limits.max_retries must be non-negative")

        if self.failure_tracking.backend not in ("memory", "sqlite"):
            errors.append(
                f"failure_tracking.backend must be 'memory' or 'sqlite', "
                f"got '{self.failure_tracking.backend}'"
            )

        return errors

    def summary(self) -> dict:
        """Configuration snapshot for logging, without secrets."""
        return {
            "chroma": {
                "mode": self.chroma.mode,
                "path": self.chroma.path if self.chroma.mode == "persistent" else None,
                "host": self.chroma.host if self.chroma.mode == "http" else None,
                "port": self.chroma.port if self.chroma.mode == "http" else None,
                "ssl": self.chroma.ssl,
                "collection": self.chroma.collection_name,
                "has_api_key": bool(self.chroma.api_key),
            },
            "embedding": {
                "model": self.embedding.model,
                "dimensions": self.embedding.dimensions,
                "batch_size": self.embedding.batch_size,
                "has_api_key": bool(self.embedding.api_key),
            },
            "limits": {
                "max_conversation_length": self.limits.max_conversation_length,
                "max_search_results": self.limits.max_search_results,
                "max_context_memories": self.limits.max_context_memories,
                "max_retries": self.limits.max_retries,
            },
            "failure_tracking": self.failure_tracking.backend,
            "log_level": self.app.log_level,
        }


# Global configuration instance
config = Config()
