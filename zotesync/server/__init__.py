"""HTTP sync server exposing /state, /pull and /push.

Built on FastAPI; every request is authenticated with the shared token.
"""

from .app import ServerState, create_app

__all__ = ["ServerState", "create_app"]
