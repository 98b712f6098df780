"""Context budgeting: token estimates, truncation, sliding windows and summaries."""

from .compaction import CompactionService
from .config import ContextConfig, ContextStats
from .estimator import HeuristicCounter, TokenCounter, estimate_message_tokens, estimate_tokens
from .manager import ContextManager, OptimizeResult, Summarizer, compress_messages
from .truncation import truncate_message, truncate_tool_result, truncate_tool_results_in_messages

__all__ = [
    "CompactionService",
    "ContextConfig",
    "ContextStats",
    "ContextManager",
    "OptimizeResult",
    "Summarizer",
    "TokenCounter",
    "HeuristicCounter",
    "compress_messages",
    "estimate_tokens",
    "estimate_message_tokens",
    "truncate_message",
    "truncate_tool_result",
    "truncate_tool_results_in_messages",
]
