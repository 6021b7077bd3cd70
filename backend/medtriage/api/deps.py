from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from medtriage.services.container import ServiceContainer
from medtriage.services.identity import Identity

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: ServiceContainer = Depends(get_services),
) -> Identity:
    """Resolve the caller from the ``Authorization: Bearer`` header."""
    token = credentials.credentials if credentials else None
    return services.identity.verify(token)
