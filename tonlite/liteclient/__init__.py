"""Lite-server networking: configuration, handshake crypto, packet parsing and the pool."""

__all__ = ["config", "crypto", "parse", "pool"]