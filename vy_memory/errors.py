"""
Error types for the semantic memory system.

Every error carries a stable code and can render itself in the uniform
failure shape returned to callers of the memory service.
"""

import json
from dataclasses import asdict, is_dataclass
from typing import Any, Literal

ProviderErrorKind = Literal[
    "authentication",
    "rate_limit",
    "malformed_response",
    "incomplete_response",
    "network",
    "unknown",
]


class VyError(Exception):
    """Base class for all errors raised by the memory system."""

    code = "VY_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render this error in the uniform failure shape."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class ValidationError(VyError):
    """Bad, oversized or missing input. Raised before any mutation."""

    code = "VALIDATION_ERROR"


class NotFoundError(VyError):
    """An operation referenced a memory id that does not exist."""

    code = "NOT_FOUND"

    def __init__(self, memory_id: str, message: str | None = None):
        super().__init__(message or f"Memory {memory_id} not found", {"memory_id": memory_id})
        self.memory_id = memory_id


class ProviderError(VyError):
    """Embedding generation failed."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = "unknown",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, {"kind": kind, **(details or {})})
        self.kind = kind


class StoreError(VyError):
    """The document store could not be reached or rejected an operation."""

    code = "STORE_ERROR"


class ConfigurationError(VyError):
    """Configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"


class ToolExecutionError(VyError):
    """
    Uniform wrapper for failures inside a memory service call.

    Carries the tool name, the original arguments and how long the call ran
    before failing, so the caller-facing layer can format one response shape.
    """

    code = "TOOL_EXECUTION_ERROR"

    def __init__(
        self,
        tool: str,
        message: str,
        args: Any = None,
        elapsed_ms: float = 0.0,
        cause: BaseException | None = None,
    ):
        super().__init__(
            f"Tool '{tool}' failed: {message}",
            {
                "tool": tool,
                "args": _serializable_args(args),
                "elapsed_ms": elapsed_ms,
                "cause": type(cause).__name__ if cause else None,
            },
        )
        self.tool = tool
        self.reason = message
        self.args_snapshot = args
        self.elapsed_ms = elapsed_ms
        self.cause = cause


def _serializable_args(args: Any) -> Any:
    """Tool arguments as a JSON-safe value; repr() when they cannot be encoded."""
    if is_dataclass(args) and not isinstance(args, type):
        args = asdict(args)
    try:
        json.dumps(args)
    except (TypeError, ValueError):
        return repr(args)
    return args
