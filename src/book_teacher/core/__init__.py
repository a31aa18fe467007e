"""Tutoring engine.

Modules:
- capabilities: Tool surface exposed to the model
- context: Token accounting and history eviction
- memory: Long-term memory and prompt assembly
- turn: Conversation turn controller
- summarizer: Summarization passes and their scheduler
- supervisor: Live session registry
"""

__all__ = [
    "capabilities",
    "context",
    "errors",
    "memory",
    "model_calls",
    "summarizer",
    "supervisor",
    "turn",
]
