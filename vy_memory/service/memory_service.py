"""
Memory Service - business logic on top of the memory store.

Exposes the three caller-facing tools:
- capture_conversation: validate, analyze and persist a conversation
- search_memory: semantic search with validated filters
- get_context: token-budgeted context curation with a selection reason

Validation errors surface as ValidationError before anything is written.
Every other failure is logged with the elapsed time and re-raised as a
single ToolExecutionError.
"""

import json
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..config import LimitsConfig, tool_context
from ..errors import ToolExecutionError, ValidationError
from ..memory.memory_store import MemoryStore, create_memory_store
from ..memory.models import (
    MEMORY_TYPES,
    ConversationPayload,
    Memory,
    SearchQuery,
    TimeRange,
    to_local_naive,
)
from .text_analyzer import PatternTextAnalyzer, TextAnalyzer

logger = logging.getLogger("vy_memory.service")

CAPTURE_SOURCE = "vy_memory"
CAPTURE_VERSION = "1.0"
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_CONTEXT_MEMORIES = 5
RECENT_MESSAGE_WINDOW = 5


def _require_dict(data: Any, name: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError(f"{name} arguments must be an object")
    return data


def _optional_int(value: Any, name: str, minimum: int = 1) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{name} must be an integer >= {minimum}", {name: value})
    return value


def _optional_str_list(value: Any, name: str) -> Optional[list[str]]:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of strings")
    return list(value)


def _parse_time(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_local_naive(value)
    try:
        # fromisoformat only accepts a trailing "Z" from Python 3.11 on
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp", {name: value}) from e
    return to_local_naive(parsed)


# ============================================================================
# Arguments
# ============================================================================

@dataclass
class CaptureConversationArgs:
    content: str
    participants: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    summary: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureConversationArgs":
        """Build from a plain dict. `conversation` is accepted for `content`."""
        data = _require_dict(data, "capture_conversation")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        summary = data.get("summary")
        if summary is not None and not isinstance(summary, str):
            raise ValidationError("summary must be a string")
        return cls(
            content=data.get("content", data.get("conversation")),
            participants=_optional_str_list(data.get("participants"), "participants"),
            tags=_optional_str_list(data.get("tags"), "tags"),
            summary=summary,
            metadata=dict(metadata),
        )


@dataclass
class SearchMemoryArgs:
    query: str
    limit: Optional[int] = None
    min_relevance_score: Optional[float] = None
    types: Optional[list[str]] = None
    time_range: Optional[dict[str, Any]] = None  # {"start": iso, "end": iso}

    @classmethod
    def from_dict(cls, data: dict) -> "SearchMemoryArgs":
        data = _require_dict(data, "search_memory")
        time_range = data.get("time_range")
        if time_range is not None and not isinstance(time_range, dict):
            raise ValidationError("time_range must be an object with start/end")
        return cls(
            query=data.get("query"),
            limit=data.get("limit"),
            min_relevance_score=data.get("min_relevance_score"),
            types=_optional_str_list(data.get("types"), "types"),
            time_range=time_range,
        )


@dataclass
class GetContextArgs:
    current_query: Optional[str] = None
    recent_messages: Optional[list[str]] = None
    max_memories: Optional[int] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GetContextArgs":
        data = _require_dict(data if data is not None else {}, "get_context")
        current_query = data.get("current_query")
        if current_query is not None and not isinstance(current_query, str):
            raise ValidationError("current_query must be a string")
        return cls(
            current_query=current_query,
            recent_messages=_optional_str_list(data.get("recent_messages"), "recent_messages"),
            max_memories=data.get("max_memories"),
            max_tokens=data.get("max_tokens"),
        )


# ============================================================================
# Results
# ============================================================================

@dataclass
class CaptureConversationResult:
    memory_id: str
    message: str
    extracted_insights: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchHit:
    id: str
    content: str
    relevance_score: float
    timestamp: str
    type: str
    snippet: str


@dataclass
class SearchMemoryResult:
    results: list[SearchHit]
    total_count: int
    search_time: float  # milliseconds
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ContextMemory:
    id: str
    content: str
    relevance_score: float
    timestamp: str
    type: str

    def estimated_tokens(self) -> int:
        """Content plus serialized metadata, ~4 characters per token."""
        return math.ceil(len(json.dumps(asdict(self))) / 4)


@dataclass
class GetContextResult:
    memories: list[ContextMemory]
    estimated_tokens: int
    selection_reason: str
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ============================================================================
# Service
# ============================================================================

class MemoryService:
    """
    Business logic for the memory tools.

    Sits between the caller-facing boundary and the MemoryStore: validates
    input, enforces limits, extracts insights and curates context.
    """

    def __init__(
        self,
        store: MemoryStore,
        limits: Optional[LimitsConfig] = None,
        analyzer: Optional[TextAnalyzer] = None,
    ):
        self.store = store
        self.limits = limits or LimitsConfig()
        self.analyzer = analyzer or PatternTextAnalyzer()
        logger.info("MemoryService created")

    async def _run_tool(self, tool: str, args: Any, handler: Callable[[Any], Awaitable[Any]]):
        """Run one tool call with log context, timing and error wrapping."""
        token = tool_context.set(tool)
        start = time.time()
        try:
            return await handler(args)
        except (ValidationError, ToolExecutionError):
            raise
        except Exception as e:
            elapsed_ms = (time.time() - start) * 1000
            logger.error(f"{tool} failed after {elapsed_ms:.0f}ms: {e}")
            raise ToolExecutionError(tool, str(e), args=args, elapsed_ms=elapsed_ms, cause=e) from e
        finally:
            tool_context.reset(token)

    # ------------------------------------------------------------------
    # capture_conversation
    # ------------------------------------------------------------------

    async def capture_conversation(self, args) -> CaptureConversationResult:
        """
        Capture and store a conversation in semantic memory.

        Args:
            args: CaptureConversationArgs or an equivalent dict

        Raises:
            ValidationError: Content missing, not a string, or too long.
            ToolExecutionError: Any failure while storing.
        """
        return await self._run_tool("capture_conversation", args, self._capture_conversation)

    def _validate_conversation(self, args: CaptureConversationArgs) -> None:
        if not isinstance(args.content, str) or not args.content.strip():
            raise ValidationError("Conversation content is required and must be a non-empty string")

        max_length = self.limits.max_conversation_length
        if len(args.content) > max_length:
            raise ValidationError(
                f"Conversation exceeds maximum length of {max_length} characters",
                {"length": len(args.content), "max_length": max_length},
            )

    async def _capture_conversation(self, args) -> CaptureConversationResult:
        if not isinstance(args, CaptureConversationArgs):
            args = CaptureConversationArgs.from_dict(args)
        self._validate_conversation(args)

        logger.info(
            f"Capturing conversation ({len(args.content)} chars, "
            f"participants={bool(args.participants)}, tags={bool(args.tags)})"
        )

        timestamp = datetime.now()
        message_count = self.analyzer.estimate_message_count(args.content)
        insights = self.analyzer.extract_insights(args.content)
        action_items = self.analyzer.extract_action_items(args.content)

        memory = Memory(
            type="conversation",
            content=args.content,
            timestamp=timestamp,
            metadata={
                "source": CAPTURE_SOURCE,
                "version": CAPTURE_VERSION,
                "captured_at": timestamp.isoformat(),
                **args.metadata,
            },
            payload=ConversationPayload(
                participants=args.participants or ["user"],
                message_count=message_count,
                summary=args.summary,
                tags=args.tags or [],
            ),
        )

        memory_id = await self.store.store_memory(memory)

        logger.info(
            f"Conversation {memory_id} captured: {message_count} messages, "
            f"{len(insights)} insights, {len(action_items)} action items"
        )

        return CaptureConversationResult(
            memory_id=memory_id,
            message=f"Conversation captured successfully with {message_count} estimated messages",
            extracted_insights=insights,
            action_items=action_items,
        )

    # ------------------------------------------------------------------
    # search_memory
    # ------------------------------------------------------------------

    async def search_memory(self, args) -> SearchMemoryResult:
        """
        Search semantic memory for relevant content.

        Defaults: limit 10 (capped at the configured maximum) and the
        configured relevance floor (0.7).
        """
        return await self._run_tool("search_memory", args, self._search_memory)

    def _build_search_query(self, args: SearchMemoryArgs) -> SearchQuery:
        if not isinstance(args.query, str) or not args.query.strip():
            raise ValidationError("Search query is required and must be a non-empty string")

        limit = _optional_int(args.limit, "limit") or DEFAULT_SEARCH_LIMIT
        limit = min(limit, self.limits.max_search_results)

        min_relevance = args.min_relevance_score
        if min_relevance is None:
            min_relevance = self.limits.default_min_relevance
        if isinstance(min_relevance, bool) or not isinstance(min_relevance, (int, float)) \
                or not 0 <= min_relevance <= 1:
            raise ValidationError(
                "min_relevance_score must be a number between 0 and 1",
                {"min_relevance_score": min_relevance},
            )

        if args.types:
            unknown = [t for t in args.types if t not in MEMORY_TYPES]
            if unknown:
                raise ValidationError(
                    f"Unknown memory type(s): {', '.join(unknown)}",
                    {"valid_types": list(MEMORY_TYPES)},
                )

        time_range = None
        if args.time_range:
            start = _parse_time(args.time_range.get("start"), "time_range.start")
            end = _parse_time(args.time_range.get("end"), "time_range.end")
            if start and end and start > end:
                raise ValidationError("time_range.start must not be after time_range.end")
            time_range = TimeRange(start=start, end=end)

        return SearchQuery(
            query=args.query,
            limit=limit,
            min_relevance_score=float(min_relevance),
            types=args.types or None,
            time_range=time_range,
        )

    async def _search_memory(self, args) -> SearchMemoryResult:
        if not isinstance(args, SearchMemoryArgs):
            args = SearchMemoryArgs.from_dict(args)
        query = self._build_search_query(args)

        preview = args.query[:100] + ("..." if len(args.query) > 100 else "")
        logger.info(f"Searching memory: '{preview}' (limit={query.limit}, min={query.min_relevance_score})")

        start = time.time()
        results = await self.store.search_memories(query)
        search_time = (time.time() - start) * 1000

        logger.info(f"Search completed: {len(results)} results in {search_time:.0f}ms")

        return SearchMemoryResult(
            results=[
                SearchHit(
                    id=r.id,
                    content=r.memory.content,
                    relevance_score=r.relevance_score,
                    timestamp=r.memory.timestamp.isoformat(),
                    type=r.memory.type,
                    snippet=r.snippet,
                )
                for r in results
            ],
            total_count=len(results),
            search_time=search_time,
        )

    # ------------------------------------------------------------------
    # get_context
    # ------------------------------------------------------------------

    async def get_context(self, args=None) -> GetContextResult:
        """
        Select memories to inject into a conversation.

        Selection is query-driven when current_query is given, driven by the
        recent messages when those are given, and recency-driven otherwise.
        """
        return await self._run_tool("get_context", args, self._get_context)

    async def _get_context(self, args) -> GetContextResult:
        if not isinstance(args, GetContextArgs):
            args = GetContextArgs.from_dict(args)

        max_memories = _optional_int(args.max_memories, "max_memories") or DEFAULT_CONTEXT_MEMORIES
        max_memories = min(max_memories, self.limits.max_context_memories)
        max_tokens = _optional_int(args.max_tokens, "max_tokens")

        current_query = (args.current_query or "").strip()
        recent = [m for m in (args.recent_messages or []) if m.strip()][-RECENT_MESSAGE_WINDOW:]

        logger.info(
            f"Getting context (query={bool(current_query)}, recent_messages={len(recent)}, "
            f"max_memories={max_memories}, max_tokens={max_tokens})"
        )

        if current_query:
            mode = "query"
            candidates = await self._context_search(
                current_query, max_memories, self.limits.context_min_relevance
            )
        elif recent:
            mode = "conversation"
            candidates = await self._context_search(
                "\n".join(recent), max_memories, self.limits.broad_min_relevance
            )
        else:
            mode = "recency"
            recent_memories = await self.store.get_recent_memories(limit=max_memories)
            candidates = [self._to_context_memory(m, 0.0) for m in recent_memories]

        candidates = candidates[:max_memories]
        selected, budget_cut = self._apply_token_budget(candidates, max_tokens)
        estimated_tokens = sum(m.estimated_tokens() for m in selected)

        reason = self._selection_reason(
            mode=mode,
            query=current_query,
            recent_count=len(recent),
            selected=len(selected),
            candidates=len(candidates),
            max_memories=max_memories,
            max_tokens=max_tokens if budget_cut else None,
        )

        logger.info(f"Context retrieval completed: {len(selected)} memories, ~{estimated_tokens} tokens")

        return GetContextResult(
            memories=selected,
            estimated_tokens=estimated_tokens,
            selection_reason=reason,
        )

    async def _context_search(self, query: str, limit: int, min_relevance: float) -> list[ContextMemory]:
        results = await self.store.search_memories(
            SearchQuery(query=query, limit=limit, min_relevance_score=min_relevance)
        )
        return [self._to_context_memory(r.memory, r.relevance_score) for r in results]

    @staticmethod
    def _to_context_memory(memory: Memory, relevance: float) -> ContextMemory:
        return ContextMemory(
            id=memory.id,
            content=memory.content,
            relevance_score=relevance,
            timestamp=memory.timestamp.isoformat(),
            type=memory.type,
        )

    @staticmethod
    def _apply_token_budget(
        candidates: list[ContextMemory],
        max_tokens: Optional[int],
    ) -> tuple[list[ContextMemory], bool]:
        """Take memories in rank order until the next would exceed max_tokens."""
        if max_tokens is None:
            return candidates, False

        selected = []
        used = 0
        for memory in candidates:
            cost = memory.estimated_tokens()
            if used + cost > max_tokens:
                return selected, True
            selected.append(memory)
            used += cost
        return selected, False

    @staticmethod
    def _selection_reason(
        mode: str,
        query: str,
        recent_count: int,
        selected: int,
        candidates: int,
        max_memories: int,
        max_tokens: Optional[int],
    ) -> str:
        """Human-readable explanation of how the context was chosen."""
        if selected == 0:
            if candidates and max_tokens is not None:
                return f"No memories fit within the {max_tokens}-token budget"
            return "No relevant memories found matching the criteria"

        if mode == "query":
            reasons = [f'matched against the current query "{query[:50]}"']
        elif mode == "conversation":
            reasons = [f"matched against the last {recent_count} messages"]
        else:
            reasons = ["most recent memories (no query given)"]

        if candidates >= max_memories:
            reasons.append(f"limited to {max_memories} memories")
        if max_tokens is not None:
            reasons.append(f"trimmed to fit the {max_tokens}-token budget")

        noun = "memory" if selected == 1 else "memories"
        return f"Selected {selected} {noun}: {'; '.join(reasons)}."

    async def close(self) -> None:
        await self.store.close()


async def create_memory_service(cfg=None, analyzer: Optional[TextAnalyzer] = None) -> MemoryService:
    """
    Factory function to create a MemoryService over a configured store.

    Args:
        cfg: Config instance (defaults to the global config)
        analyzer: Optional TextAnalyzer (pattern-based by default)
    """
    if cfg is None:
        from ..config import config as cfg

    store = await create_memory_store(cfg)
    return MemoryService(store=store, limits=cfg.limits, analyzer=analyzer)
