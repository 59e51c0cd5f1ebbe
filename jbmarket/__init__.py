"""jbmarket - JetBrains Marketplace plugin index generator."""

__version__ = "0.1.0"
