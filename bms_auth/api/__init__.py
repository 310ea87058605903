# Ultra BMS Auth API
from bms_auth.api.router import api_router

__all__ = ["api_router"]
