"""Streaming response normalization: SSE framing, tool call assembly and the normalizer."""
