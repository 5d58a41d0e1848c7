"""hypermaps: branch AI chat conversations as a node graph."""

__version__ = "0.1.0"
