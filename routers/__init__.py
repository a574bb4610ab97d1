from .gateway import router as gateway_router

__all__ = [
    "gateway_router",
]
