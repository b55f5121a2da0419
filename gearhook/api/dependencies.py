"""
Request-scoped collaborators built once by the app factory (see main.create_app).
"""
from fastapi import Request

from gearhook.config import Settings, get_settings
from gearhook.services.handlers import HandlerRegistry, get_default_registry
from gearhook.services.mailer import Mailer, build_mailer


def get_mailer(request: Request) -> Mailer:
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        mailer = build_mailer(get_settings())
        request.app.state.mailer = mailer
    return mailer


def get_registry(request: Request) -> HandlerRegistry:
    return getattr(request.app.state, "handler_registry", None) or get_default_registry()


def get_app_settings() -> Settings:
    return get_settings()
