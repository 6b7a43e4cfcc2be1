from fastapi import Request

from app.core.exceptions import UnconfiguredError
from app.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise UnconfiguredError("Services are not initialized")
    return services
