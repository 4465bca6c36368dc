# Middleware: request logging
from patterncast.middleware.request_logger import RequestLoggerMiddleware

__all__ = ["RequestLoggerMiddleware"]
