"""AI streaming gateway: provider payloads, stream parsing, tool loop, key pool and usage."""

__version__ = "0.3.0"
