"""
Documentation Site Export Service package.

This module provides a FastAPI application that turns "convert this
documentation site" requests into tracked jobs delegated to an external
converter, with a server-sent event stream for status and an artifact download.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
