"""Serve an RSS 2.0 feed for any web page."""

__version__ = "0.1.0"
