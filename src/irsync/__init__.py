"""Bidirectional source-tree synchronization through a versioned IR."""

__version__ = "0.1.0"
