from .health_routes import router as health_router
from .provision_routes import router as provision_router

__all__ = [
    "health_router",
    "provision_router",
]
