"""Backend transport."""

from market_copilot.llm.clients import BackendClient, get_backend_client

__all__ = ["BackendClient", "get_backend_client"]
