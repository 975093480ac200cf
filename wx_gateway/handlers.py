"""Message handlers for the POST side of a service's webhook path."""

import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional

import httpx
from cachetools import TTLCache

from wx_gateway.config import USER_INFO_CACHE_TTL, log
from wx_gateway.errors import ClientInputError, UpstreamError
from wx_gateway.token_cache import AccessTokenCache
from wx_gateway.wxclient import INVALID_TOKEN_ERRCODES, WxClient

# the platform treats this body as "received, no reply"
NO_REPLY = "success"


def parse_message(body: bytes) -> Dict[str, str]:
    """Flatten the platform's ``<xml>`` message into ``{tag: text}``."""
    if not body:
        raise ClientInputError("empty message body")
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ClientInputError(f"malformed message body: {e}")
    return {child.tag: (child.text or "").strip() for child in root}


class MessageHandler:
    kind = "abstract"

    async def handle(self, service: str, msg: Dict[str, str], rid: str) -> str:
        raise NotImplementedError


class LocalMessageHandler(MessageHandler):
    kind = "local"

    async def handle(self, service: str, msg: Dict[str, str], rid: str) -> str:
        log.info(
            "msg_local rid=%s service=%s type=%s event=%s",
            rid, service, msg.get("MsgType"), msg.get("Event", ""),
        )
        return NO_REPLY


class ProxyMessageHandler(MessageHandler):
    """Forward each message as JSON to ``proxy_url`` and relay its reply."""

    kind = "proxy"

    def __init__(
        self,
        proxy_url: str,
        client: WxClient,
        token_cache: AccessTokenCache,
        timeout: Optional[float] = None,
        append_user_info: bool = True,
    ):
        self.proxy_url = proxy_url
        self.client = client
        self.token_cache = token_cache
        self.timeout = timeout
        self.append_user_info = append_user_info
        self._user_info: TTLCache = TTLCache(maxsize=10_000, ttl=USER_INFO_CACHE_TTL)

    async def lookup_user_info(self, open_id: str, rid: str) -> Optional[Dict[str, Any]]:
        cached = self._user_info.get(open_id)
        if cached is not None:
            return cached
        try:
            token = await self.token_cache.get_valid_token()
        except UpstreamError as e:
            log.warning("msg_userinfo_failed rid=%s err=%s", rid, e)
            return None
        try:
            info = await self.client.get_user_info(token, open_id)
        except UpstreamError as e:
            if e.errcode in INVALID_TOKEN_ERRCODES:
                self.token_cache.invalidate(token)
            log.warning("msg_userinfo_failed rid=%s err=%s", rid, e)
            return None
        self._user_info[open_id] = info
        return info

    async def handle(self, service: str, msg: Dict[str, str], rid: str) -> str:
        payload: Dict[str, Any] = {"service": service, "msg": msg}
        open_id = msg.get("FromUserName")
        if self.append_user_info and open_id:
            user_info = await self.lookup_user_info(open_id, rid)
            if user_info is not None:
                payload["userInfo"] = user_info

        log.info("msg_proxy rid=%s service=%s url=%s", rid, service, self.proxy_url)
        try:
            resp = await self.client.http.post(
                self.proxy_url,
                json=payload,
                headers={"X-Request-Id": rid},
                timeout=self.timeout or self.client.timeout,
            )
        except httpx.HTTPError as e:
            log.warning("msg_proxy_failed rid=%s service=%s err=%s", rid, service, e)
            return NO_REPLY

        if resp.status_code >= 400:
            log.warning("msg_proxy_status rid=%s service=%s status=%s", rid, service, resp.status_code)
            return NO_REPLY

        log.info("msg_proxy_exit rid=%s service=%s reply_len=%s", rid, service, len(resp.text))
        return resp.text or NO_REPLY
