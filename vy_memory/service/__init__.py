"""Memory service tools: capture_conversation, search_memory, get_context."""

from .memory_service import (
    MemoryService,
    create_memory_service,
    CaptureConversationArgs,
    CaptureConversationResult,
    SearchMemoryArgs,
    SearchMemoryResult,
    GetContextArgs,
    GetContextResult,
)
from .text_analyzer import TextAnalyzer, PatternTextAnalyzer

__all__ = [
    "MemoryService",
    "create_memory_service",
    "CaptureConversationArgs",
    "CaptureConversationResult",
    "SearchMemoryArgs",
    "SearchMemoryResult",
    "GetContextArgs",
    "GetContextResult",
    "TextAnalyzer",
    "PatternTextAnalyzer",
]
