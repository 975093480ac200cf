from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from wx_gateway.config import GATEWAY_VERSION, GatewayConfig, error_response, load_gateway_config, log
from wx_gateway.errors import GatewayError
from wx_gateway.middleware import RequestLoggingMiddleware, SignatureMiddleware
from wx_gateway.registry import build_registry
from wx_gateway.routes import build_api_router, build_webhook_router
from wx_gateway.wxclient import WxClient


def create_app(conf: GatewayConfig, client: Optional[WxClient] = None) -> FastAPI:
    """Compose the gateway; raises ``ConfigError`` before anything is served."""
    client = client or WxClient()
    registry = build_registry(conf, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("gateway_start services=%s", len(registry))
        yield
        await client.aclose()
        log.info("gateway_stop")

    app = FastAPI(title="WeChat gateway", version=GATEWAY_VERSION, lifespan=lifespan)
    app.state.registry = registry
    app.state.conf = conf

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        rid = getattr(request.state, "request_id", "unknown")
        log.warning(
            "request_failed rid=%s kind=%s status=%s msg=%s",
            rid, type(exc).__name__, exc.status_code, exc.message,
        )
        return error_response(exc.status_code, exc.message)

    # added last runs first: logging assigns the request id the signature check logs with
    app.add_middleware(SignatureMiddleware, registry=registry)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(build_webhook_router(registry))
    app.include_router(build_api_router(conf.common_endpoints))
    return app


def main() -> None:
    import uvicorn

    conf = load_gateway_config()
    app = create_app(conf)
    # one process: token refreshes are serialized per process, not across them
    uvicorn.run(app, host=conf.listen_host or "0.0.0.0", port=conf.listen_port)


if __name__ == "__main__":
    main()
