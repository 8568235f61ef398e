"""ASGI entry point: ``uvicorn commaudit.main:app``."""
from commaudit.api.main import app

__all__ = ["app"]
