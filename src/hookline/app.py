"""ASGI entry point: ``uvicorn hookline.app:app``."""

from hookline.api.main import create_app

app = create_app()
