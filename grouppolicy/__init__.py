"""GroupPolicy derivative controller."""

__version__ = "0.1.0"
