"""
Middleware components for request processing.
"""

from booking_engine.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
