"""Per-provider request payload builders."""

from chat_gateway.builders.base import PayloadBuilder
from chat_gateway.builders.registry import BuilderRegistry, resolve_provider_type

__all__ = ["BuilderRegistry", "PayloadBuilder", "resolve_provider_type"]
