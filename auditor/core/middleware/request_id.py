import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from auditor.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var, user_id_ctx_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign or propagate x-request-id and log one completion line per request."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        uid_token = user_id_ctx_var.set(None)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            user_id_ctx_var.reset(uid_token)
            request_id_ctx_var.reset(rid_token)
        elapsed_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        # user_id is set on request.state by the auth dependencies
        logging.getLogger(LOGGER_NAME).info(
            "request.complete",
            extra={
                "request_id": rid,
                "user_id": getattr(request.state, "user_id", None),
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
