"""Stream chunk parsers, one per provider dialect."""

from chat_gateway.parsers.framing import ChunkParser, Frame, parse_stream
from chat_gateway.parsers.registry import ParserRegistry

__all__ = ["ChunkParser", "Frame", "ParserRegistry", "parse_stream"]
