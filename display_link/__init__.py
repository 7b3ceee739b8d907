"""display-link: resilient delivery of messages and power readings to displays."""

__all__ = ["__version__"]

__version__ = "0.1.0"
