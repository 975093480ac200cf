import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from wx_gateway.auth import verify_signature
from wx_gateway.config import error_response, log
from wx_gateway.errors import AuthenticationError


def summarize_bytes(b: bytes, limit: int = 4096) -> str:
    if not b:
        return ""
    if len(b) <= limit:
        return b.decode("utf-8", errors="replace")
    head = b[:limit].decode("utf-8", errors="replace")
    return f"{head}...(+{len(b) - limit} bytes)"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = rid

        start = time.time()
        client = request.client.host if request.client else "unknown"

        body_bytes = await request.body()
        request.state.raw_body = body_bytes

        # query strings carry signatures and OAuth codes, so only the path is logged
        log.info(
            "REQ_ENTER rid=%s method=%s path=%s client=%s",
            rid, request.method, request.url.path, client,
        )
        if body_bytes:
            log.debug("REQ_BODY rid=%s body=%s", rid, summarize_bytes(body_bytes))

        try:
            response: Response = await call_next(request)
        except Exception:
            duration_ms = int((time.time() - start) * 1000)
            log.exception("REQ_ERROR rid=%s duration_ms=%s", rid, duration_ms)
            raise

        duration_ms = int((time.time() - start) * 1000)
        log.info(
            "REQ_EXIT rid=%s status=%s duration_ms=%s",
            rid,
            getattr(response, "status_code", "unknown"),
            duration_ms,
        )
        response.headers["X-Request-Id"] = rid
        return response


class SignatureMiddleware(BaseHTTPMiddleware):
    """Reject webhook requests whose platform signature does not verify.

    Only the services' webhook paths are checked; every other path passes
    through untouched.
    """

    def __init__(self, app, registry):
        super().__init__(app)
        self.services = {entry.endpoints.service_path: entry for entry in registry}

    async def dispatch(self, request: Request, call_next):
        entry = self.services.get(request.url.path)
        if entry is None:
            return await call_next(request)

        rid = getattr(request.state, "request_id", "unknown")
        q = request.query_params
        ok = verify_signature(
            entry.credentials.token_secret,
            q.get("signature"),
            q.get("timestamp"),
            q.get("nonce"),
            window=entry.timeout,
            rid=rid,
        )
        if not ok:
            log.warning("webhook_rejected rid=%s service=%s", rid, entry.name)
            err = AuthenticationError("signature check failed")
            return error_response(err.status_code, err.message)

        request.state.service = entry.name
        return await call_next(request)
