"""
API - HTTP 라우터
"""

from .routes import router, health_router, get_runtime

__all__ = ["router", "health_router", "get_runtime"]
