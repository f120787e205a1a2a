"""Client library for TON lite-servers: addresses, TL serialization and connections."""

__version__ = "0.1.0"
__all__ = ["address", "tl", "liteclient"]