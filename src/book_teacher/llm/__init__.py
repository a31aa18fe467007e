"""LLM client for OpenAI-compatible providers."""
