from .app import app, serve

__all__ = ["app", "serve"]
