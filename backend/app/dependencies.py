"""
Deadline Enforcer - Shared FastAPI dependencies

Long-lived objects (push channel, collaborators) are owned by the
application and stored on app.state by the lifespan handler.
"""
from fastapi import Request

from .services.collaborators import Collaborators, build_collaborators


def get_push_channel(request: Request):
    """The application's push channel, or None when push is not running."""
    return getattr(request.app.state, "push_channel", None)


def get_collaborators(request: Request) -> Collaborators:
    """Penalty collaborators, built from the environment on first use."""
    collaborators = getattr(request.app.state, "collaborators", None)
    if collaborators is None:
        collaborators = build_collaborators()
        request.app.state.collaborators = collaborators
    return collaborators
