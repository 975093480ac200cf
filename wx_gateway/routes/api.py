"""Auxiliary REST endpoints proxied to the platform with a service's access token."""

from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from wx_gateway.config import DEFAULT_QR_EXPIRE_SECONDS, CommonEndpoints, log, ok_response
from wx_gateway.errors import ClientInputError, UpstreamError
from wx_gateway.wxclient import INVALID_TOKEN_ERRCODES

QR_TYPES = {
    "temp": "temp",
    "temporary": "temp",
    "forever": "forever",
    "permanent": "forever",
}

SNS_SCOPES = {
    "": "base",
    "base": "base",
    "snsapi_base": "base",
    "userinfo": "userinfo",
    "snsapi_userinfo": "userinfo",
}


async def form_value(request: Request, name: str) -> str:
    """Form body value for POSTs, falling back to the query string."""
    if request.method == "POST":
        form = await request.form()
        value = form.get(name)
        if isinstance(value, str) and value:
            return value
    return request.query_params.get(name) or ""


async def required(request: Request, name: str, hint: str) -> str:
    value = await form_value(request, name)
    if not value:
        raise ClientInputError(f"{hint} parameter expected")
    return value


async def resolve_service(request: Request):
    name = await required(request, "s", "s(ervice)")
    return request.app.state.registry.resolve(name)


def parse_expire_seconds(value: str) -> int:
    """Seconds a temporary QR code stays valid; non-positive or junk means the default."""
    try:
        secs = int(value)
    except (TypeError, ValueError):
        return DEFAULT_QR_EXPIRE_SECONDS
    return secs if secs > 0 else DEFAULT_QR_EXPIRE_SECONDS


async def with_token(entry, call: Callable[[str], Awaitable[Any]]) -> Any:
    token = await entry.token_cache.get_valid_token()
    try:
        return await call(token)
    except UpstreamError as e:
        if e.errcode in INVALID_TOKEN_ERRCODES:
            entry.token_cache.invalidate(token)
        raise


# GET ${wx-qr}?s=<service>&t=temp|forever[&sceneid=xx][&e=<expire-secs-for-temp>]
async def create_qr(request: Request):
    rid = getattr(request.state, "request_id", "unknown")
    entry = await resolve_service(request)
    client = request.app.state.registry.client

    qr_type = QR_TYPES.get(await required(request, "t", "t(ype)"))
    if qr_type is None:
        raise ClientInputError('t(ype) value must be "temp" or "forever"')

    scene = await form_value(request, "sceneid") or "0"
    expire: Optional[int] = None
    if qr_type == "temp":
        expire = parse_expire_seconds(await form_value(request, "e"))

    log.info("qr_create rid=%s service=%s type=%s expire=%s", rid, entry.name, qr_type, expire)
    ticket_url, qr_url = await with_token(entry, lambda token: client.create_qr(token, scene, expire))
    return ok_response(result={
        "ticketURL2ShowQrCode": ticket_url,
        "urlIncluedInQrcode": qr_url,
    })


# GET ${wx-user}?s=<service>&o=<openId>
async def get_user_info(request: Request):
    rid = getattr(request.state, "request_id", "unknown")
    entry = await resolve_service(request)
    client = request.app.state.registry.client
    open_id = await required(request, "o", "o(penId)")

    log.info("user_info rid=%s service=%s", rid, entry.name)
    user_info = await with_token(entry, lambda token: client.get_user_info(token, open_id))
    return ok_response(userInfo=user_info)


# GET ${sns-api}?s=<service>&code=<code>&scope=base|userinfo
async def sns_api(request: Request):
    rid = getattr(request.state, "request_id", "unknown")
    entry = await resolve_service(request)
    client = request.app.state.registry.client

    scope = SNS_SCOPES.get(await form_value(request, "scope"))
    if scope is None:
        raise ClientInputError('scope must be "userinfo", "base", "snsapi_userinfo" or "snsapi_base"')
    code = await required(request, "code", "code")

    creds = entry.credentials
    sns = await client.exchange_oauth_code(creds.app_id, creds.app_secret, code)
    open_id = sns["openid"]

    user_info = None
    error = ""
    try:
        if scope == "base":
            user_info = await with_token(entry, lambda token: client.get_user_info(token, open_id))
        else:
            user_info = await client.get_sns_user_info(sns.get("access_token", ""), open_id)
    except UpstreamError as e:
        log.warning("sns_userinfo_failed rid=%s service=%s err=%s", rid, entry.name, e)
        error = e.message

    log.info("sns_api rid=%s service=%s scope=%s", rid, entry.name, scope)
    return ok_response(openId=open_id, userInfo=user_info, error=error)


# POST ${short-url}  s=<service>&u=<long-url>
async def create_short_url(request: Request):
    rid = getattr(request.state, "request_id", "unknown")
    entry = await resolve_service(request)
    client = request.app.state.registry.client
    long_url = await required(request, "u", "u(rl)")

    log.info("short_url rid=%s service=%s", rid, entry.name)
    short_url = await with_token(entry, lambda token: client.make_short_url(token, long_url))
    return ok_response(**{"short-url": short_url})


async def health(request: Request):
    return PlainTextResponse("OK\n")


def build_api_router(endpoints: CommonEndpoints) -> APIRouter:
    router = APIRouter()
    if endpoints.health_check:
        router.add_api_route(endpoints.health_check, health, methods=["GET"])
    if endpoints.wx_qr:
        router.add_api_route(endpoints.wx_qr, create_qr, methods=["GET"])
    if endpoints.wx_user:
        router.add_api_route(endpoints.wx_user, get_user_info, methods=["GET"])
    if endpoints.sns_api:
        router.add_api_route(endpoints.sns_api, sns_api, methods=["GET"])
    if endpoints.short_url:
        router.add_api_route(endpoints.short_url, create_short_url, methods=["POST"])
    return router
