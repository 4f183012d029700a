"""HTTP transport for provider calls."""

from chat_gateway.llm.client import ProviderHttpClient

__all__ = ["ProviderHttpClient"]
