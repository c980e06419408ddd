"""Launch-and-observe coordinator for cluster automation jobs."""

__version__ = "0.1.0"
