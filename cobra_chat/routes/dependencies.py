from fastapi import Request

from cobra_chat.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """The container built at startup (see main.lifespan)."""
    return request.app.state.services
