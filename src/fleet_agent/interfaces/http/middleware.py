"""
Request logging middleware.

Adds a request_id to every log event emitted while a request is handled.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from fleet_agent.infrastructure.logging import bind_context, clear_context, get_logger


logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request context to the logs of each HTTP request and adds
    X-Request-ID / X-Process-Time headers to the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        bind_context(request_id=request_id, method=request.method, path=request.url.path)

        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{process_time:.3f}"

            logger.info(
                "Request completed",
                status_code=response.status_code,
                process_time=f"{process_time:.3f}s",
            )
            return response

        except Exception as e:
            logger.exception(
                "Request failed",
                error=str(e),
                process_time=f"{time.time() - start_time:.3f}s",
            )
            raise

        finally:
            clear_context()
