"""Relay backend for the AR voice assistant.

Two halves share one FastAPI application (see :func:`create_app`):

- a detector relay: an in-memory queue that an external detector pushes
  text into and a single consumer claims, processes and acknowledges;
- a chat relay: proxies an upstream completion API, either as one blocking
  call or re-framed as a server-sent-event delta stream.

Typical usage
-------------
from arai_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 5000
"""

from __future__ import annotations

from .server import create_app

__all__ = ["create_app", "__version__", "get_version"]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
