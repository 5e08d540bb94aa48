from .routes import router as stock_router
from .checkout_routes import router as checkout_router
from .errors import register_error_handlers

__all__ = ["stock_router", "checkout_router", "register_error_handlers"]
