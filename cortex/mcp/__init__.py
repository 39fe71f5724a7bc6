"""
Cortex MCP adapter: stdio framing, request routing, method dispatch.
"""
