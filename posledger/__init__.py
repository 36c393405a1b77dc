"""Order, shift and payment core for multi-terminal restaurant POS."""

__version__ = "0.1.0"
