"""Conversational chat server with persisted per-conversation transcripts.

The package provides a FastAPI application factory named ``create_app``
(see :mod:`kv_chat.server`) and a client-side conversation state machine
(see :mod:`kv_chat.client`).

Typical usage
-------------
from kv_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


from .server import create_app  # noqa: E402
