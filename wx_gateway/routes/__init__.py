from .api import build_api_router
from .webhook import build_webhook_router

__all__ = ["build_api_router", "build_webhook_router"]
