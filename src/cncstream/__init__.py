"""cncstream - chunked streaming of large G-code programs."""

__version__ = "0.1.0"
