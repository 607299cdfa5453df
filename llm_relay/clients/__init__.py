"""Clients package containing the outbound LLM client and the request throttler."""

from __future__ import annotations

from .llm_client import LLMClient
from .throttler import RequestThrottler

__all__ = ["LLMClient", "RequestThrottler"]
