import json
import time
from collections import Counter

import httpx
import pytest
from fastapi.testclient import TestClient

from wx_gateway.auth import make_signature
from wx_gateway.config import parse_gateway_config
from wx_gateway.main import create_app
from wx_gateway.wxclient import WxClient

WX_BASE = "https://wx.test"
PROXY_URL = "http://proxy.test/msg"

SAMPLE_CONF = {
    "listen-host": "127.0.0.1",
    "listen-port": 7080,
    "services": [
        {
            "name": "a",
            "wx-params": {"token": "tokenA", "app-id": "appa", "app-secret": "secreta"},
            "listen-endpoints": {"service-path": "/a", "redirect-path": "/a/redirect"},
            "msg-proxy-pass": PROXY_URL,
            "redirect-url": "https://site.test/landing?from=wx",
        },
        {
            "name": "b",
            "timeout": 300,
            "wx-params": {"token": "tokenB", "app-id": "appb", "app-secret": "secretb"},
            "listen-endpoints": {"service-path": "/b"},
        },
    ],
    "common-endpoints": {
        "health-check": "/health",
        "wx-qr": "/qr",
        "wx-user": "/user",
        "sns-api": "/sns",
        "short-url": "/shorturl",
    },
}


class FakeWx:
    """In-process stand-in for the platform API and the message proxy."""

    def __init__(self):
        self.requests = []
        self.token_calls = Counter()
        self.fail_apps = set()
        self.qr_bodies = []
        self.proxied = []
        self.proxy_reply = "<xml><Content>pong</Content></xml>"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        path = request.url.path

        if request.url.host == "proxy.test":
            self.proxied.append(json.loads(request.content))
            return httpx.Response(200, text=self.proxy_reply)

        if path == "/cgi-bin/token":
            app_id = params["appid"]
            self.token_calls[app_id] += 1
            if app_id in self.fail_apps:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json={
                "access_token": f"token-{app_id}-{self.token_calls[app_id]}",
                "expires_in": 7200,
            })

        if path == "/cgi-bin/qrcode/create":
            body = json.loads(request.content)
            self.qr_bodies.append(body)
            return httpx.Response(200, json={
                "ticket": "T+1/x",
                "expire_seconds": body.get("expire_seconds"),
                "url": "http://weixin.qq.com/q/abc",
            })

        if path == "/cgi-bin/user/info":
            if params["openid"] == "o-missing":
                return httpx.Response(200, json={"errcode": 40003, "errmsg": "invalid openid"})
            return httpx.Response(200, json={
                "subscribe": 1, "openid": params["openid"], "nickname": "alice",
            })

        if path == "/sns/oauth2/access_token":
            if params["code"] == "bad":
                return httpx.Response(200, json={"errcode": 40029, "errmsg": "invalid code"})
            return httpx.Response(200, json={
                "access_token": "sns-token",
                "openid": f"o-{params['code']}",
                "scope": "snsapi_userinfo",
            })

        if path == "/sns/userinfo":
            return httpx.Response(200, json={
                "openid": params["openid"], "nickname": "bob", "headimgurl": "http://img.test/b",
            })

        if path == "/cgi-bin/shorturl":
            return httpx.Response(200, json={
                "errcode": 0, "errmsg": "ok", "short_url": "https://w.url.cn/s/abc",
            })

        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


def signed_params(token: str, timestamp: str = None, nonce: str = "n0nce", **extra) -> dict:
    timestamp = timestamp or str(int(time.time()))
    return {
        "signature": make_signature(token, timestamp, nonce),
        "timestamp": timestamp,
        "nonce": nonce,
        **extra,
    }


@pytest.fixture
def gateway_conf():
    return parse_gateway_config(json.loads(json.dumps(SAMPLE_CONF)))


@pytest.fixture
def fake_wx():
    return FakeWx()


@pytest.fixture
def wx_client(fake_wx):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_wx))
    return WxClient(http=http, base_url=WX_BASE)


@pytest.fixture
def client(gateway_conf, wx_client):
    app = create_app(gateway_conf, wx_client)
    with TestClient(app) as c:
        yield c
