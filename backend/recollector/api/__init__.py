# Recollector API
from recollector.api.router import api_router

__all__ = ["api_router"]
