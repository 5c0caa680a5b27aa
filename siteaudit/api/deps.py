"""Request dependencies shared by the API routes."""

from typing import Annotated

from fastapi import Depends, Request

from siteaudit.storage.handles import DatabaseHandles


def get_handles(request: Request) -> DatabaseHandles:
    """The DatabaseHandles opened by the application lifespan."""
    return request.app.state.handles


Handles = Annotated[DatabaseHandles, Depends(get_handles)]
