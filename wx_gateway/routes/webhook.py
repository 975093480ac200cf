from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from wx_gateway.config import error_response, log
from wx_gateway.errors import ClientInputError
from wx_gateway.handlers import parse_message


def append_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def build_webhook_router(registry) -> APIRouter:
    router = APIRouter()
    for entry in registry:
        _add_service_routes(router, entry, registry)
    return router


def _add_service_routes(router: APIRouter, entry, registry) -> None:
    name = entry.name

    async def echo(request: Request):
        """Ownership check from the platform; SignatureMiddleware has already run."""
        rid = getattr(request.state, "request_id", "unknown")
        echostr = request.query_params.get("echostr", "")
        log.info("webhook_echo rid=%s service=%s", rid, name)
        return PlainTextResponse(echostr)

    async def message(request: Request):
        rid = getattr(request.state, "request_id", "unknown")
        body_bytes = getattr(request.state, "raw_body", None)
        if body_bytes is None:
            body_bytes = await request.body()

        msg = parse_message(body_bytes)
        log.info(
            "webhook_msg rid=%s service=%s type=%s from=%s",
            rid, name, msg.get("MsgType"), msg.get("FromUserName"),
        )
        reply = await entry.message_handler.handle(name, msg, rid)
        media_type = "application/xml" if reply.lstrip().startswith("<") else "text/plain"
        return Response(content=reply, media_type=media_type)

    router.add_api_route(entry.endpoints.service_path, echo, methods=["GET"], name=f"{name}_echo")
    router.add_api_route(entry.endpoints.service_path, message, methods=["POST"], name=f"{name}_message")

    if not entry.endpoints.redirect_path:
        return

    async def redirect(request: Request):
        """OAuth redirect entry: resolve the visitor's openId and bounce to ``redirect_url``."""
        rid = getattr(request.state, "request_id", "unknown")
        if not entry.redirect_url:
            return error_response(404, f"no redirect-url configured for service {name}")

        code = request.query_params.get("code", "")
        if not code:
            raise ClientInputError("code parameter expected")
        state = request.query_params.get("state", "")

        creds = entry.credentials
        sns = await registry.client.exchange_oauth_code(creds.app_id, creds.app_secret, code)
        open_id = sns["openid"]

        params = {"openId": open_id, "state": state}
        if entry.redirect_userinfo:
            info = await registry.client.get_sns_user_info(sns.get("access_token", ""), open_id)
            params["nickname"] = info.get("nickname")
            params["headimgurl"] = info.get("headimgurl")

        log.info("webhook_redirect rid=%s service=%s", rid, name)
        return RedirectResponse(append_query(entry.redirect_url, **params), status_code=302)

    router.add_api_route(entry.endpoints.redirect_path, redirect, methods=["GET"], name=f"{name}_redirect")
