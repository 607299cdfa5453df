"""
LLM Relay

Chat-completion relay that normalizes requests, tool calls and streamed
responses across OpenAI, Anthropic, Google Gemini, Mistral and
OpenAI-compatible endpoints, and forwards them to browsers over SSE.
"""

__version__ = "0.1.0"
