"""Thin async client for the WeChat platform REST API.

Every call carries the bounded ``UPSTREAM_TIMEOUT``; transport failures,
non-2xx statuses and a non-zero ``errcode`` in the JSON body all surface as
:class:`UpstreamError`.
"""

from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from wx_gateway.config import UPSTREAM_TIMEOUT, WX_API_BASE, WX_QR_SHOW_URL, log
from wx_gateway.errors import UpstreamError

# errcodes meaning the access token itself is no longer accepted
INVALID_TOKEN_ERRCODES = frozenset({40001, 40014, 42001})


class WxClient:
    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        base_url: str = WX_API_BASE,
        timeout: float = UPSTREAM_TIMEOUT,
    ):
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _call(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(
                method, url, params=params, json=json_body, timeout=self.timeout,
            )
        except httpx.TimeoutException:
            log.warning("wx_call_timeout path=%s", path)
            raise UpstreamError(f"request to {path} timed out")
        except httpx.HTTPError as e:
            log.warning("wx_call_failed path=%s err=%s", path, e)
            raise UpstreamError(f"request to {path} failed: {e}")

        if resp.status_code >= 400:
            log.warning("wx_call_status path=%s status=%s", path, resp.status_code)
            raise UpstreamError(f"{path} returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            raise UpstreamError(f"{path} returned a non-JSON body")
        if not isinstance(data, dict):
            raise UpstreamError(f"{path} returned an unexpected body")

        errcode = data.get("errcode", 0) or 0
        if errcode != 0:
            errmsg = data.get("errmsg", "unknown error")
            log.warning("wx_call_errcode path=%s errcode=%s errmsg=%s", path, errcode, errmsg)
            raise UpstreamError(f"errcode {errcode}: {errmsg}", errcode=errcode)
        return data

    async def fetch_access_token(self, app_id: str, app_secret: str) -> Tuple[str, int]:
        """Issue a new access token; returns ``(token, ttl_seconds)``."""
        data = await self._call("GET", "/cgi-bin/token", {
            "grant_type": "client_credential",
            "appid": app_id,
            "secret": app_secret,
        })
        token = data.get("access_token")
        if not token:
            raise UpstreamError("token response carries no access_token")
        return token, int(data.get("expires_in", 7200))

    async def create_qr(
        self, access_token: str, scene: str, expire_seconds: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Create a string-scene QR code.

        A temporary code is created when ``expire_seconds`` is given, a
        permanent one otherwise. Returns ``(ticket_url_to_show_qrcode,
        url_included_in_qrcode)``.
        """
        body: Dict[str, Any] = {"action_info": {"scene": {"scene_str": scene}}}
        if expire_seconds is None:
            body["action_name"] = "QR_LIMIT_STR_SCENE"
        else:
            body["action_name"] = "QR_STR_SCENE"
            body["expire_seconds"] = expire_seconds

        data = await self._call("POST", "/cgi-bin/qrcode/create", {"access_token": access_token}, body)
        ticket = data.get("ticket", "")
        return f"{WX_QR_SHOW_URL}?ticket={quote(ticket, safe='')}", data.get("url", "")

    async def get_user_info(self, access_token: str, open_id: str) -> Dict[str, Any]:
        return await self._call("GET", "/cgi-bin/user/info", {
            "access_token": access_token,
            "openid": open_id,
            "lang": "zh_CN",
        })

    async def exchange_oauth_code(self, app_id: str, app_secret: str, code: str) -> Dict[str, Any]:
        """Exchange a web-auth ``code`` for ``{access_token, openid, scope, ...}``."""
        data = await self._call("GET", "/sns/oauth2/access_token", {
            "appid": app_id,
            "secret": app_secret,
            "code": code,
            "grant_type": "authorization_code",
        })
        if not data.get("openid"):
            raise UpstreamError("code exchange returned no openid")
        return data

    async def get_sns_user_info(self, sns_access_token: str, open_id: str) -> Dict[str, Any]:
        return await self._call("GET", "/sns/userinfo", {
            "access_token": sns_access_token,
            "openid": open_id,
            "lang": "zh_CN",
        })

    async def make_short_url(self, access_token: str, long_url: str) -> str:
        data = await self._call(
            "POST", "/cgi-bin/shorturl", {"access_token": access_token},
            {"action": "long2short", "long_url": long_url},
        )
        return data.get("short_url", "")
