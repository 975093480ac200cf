import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi.responses import JSONResponse

from wx_gateway.errors import ConfigError

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("WX_GATEWAY_LOG_FILE", "")

log = logging.getLogger("wx-gateway")
log.setLevel(LOG_LEVEL)

_log_fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

# Console handler
_console_h = logging.StreamHandler()
_console_h.setFormatter(_log_fmt)
log.addHandler(_console_h)

# File handler, rotated so the token gateway can run unattended
if LOG_FILE:
    try:
        from logging.handlers import RotatingFileHandler
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        _file_h = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3)
        _file_h.setFormatter(_log_fmt)
        log.addHandler(_file_h)
        log.info("file_logging_enabled path=%s", LOG_FILE)
    except OSError as _log_err:
        log.warning("file_logging_failed path=%s err=%s", LOG_FILE, _log_err)

GATEWAY_VERSION = "1.0.0"

WX_API_BASE = os.environ.get("WX_API_BASE", "https://api.weixin.qq.com").rstrip("/")
WX_QR_SHOW_URL = "https://mp.weixin.qq.com/cgi-bin/showqrcode"
UPSTREAM_TIMEOUT = float(os.environ.get("UPSTREAM_TIMEOUT", "10"))  # seconds
TOKEN_SAFETY_MARGIN = int(os.environ.get("TOKEN_SAFETY_MARGIN", "60"))  # seconds
GATEWAY_CONF_PATH = Path(os.environ.get("WX_GATEWAY_CONF", "wx-gateway.json"))

DEFAULT_QR_EXPIRE_SECONDS = 30
USER_INFO_CACHE_TTL = 300  # seconds


@dataclass(frozen=True)
class WxParams:
    token: str
    app_id: str
    app_secret: str
    aes_key: Optional[str] = None


@dataclass(frozen=True)
class ServiceEndpoints:
    service_path: str
    redirect_path: str = ""


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    wx_params: WxParams
    endpoints: ServiceEndpoints
    timeout: int = 0
    msg_proxy_pass: str = ""
    redirect_url: str = ""
    redirect_userinfo: bool = False


@dataclass(frozen=True)
class CommonEndpoints:
    health_check: str = ""
    wx_qr: str = ""
    wx_user: str = ""
    sns_api: str = ""
    short_url: str = ""


@dataclass
class GatewayConfig:
    listen_host: str = ""
    listen_port: int = 7080
    token_cache_dir: str = ""
    dont_append_userinfo: bool = False
    services: List[ServiceConfig] = field(default_factory=list)
    common_endpoints: CommonEndpoints = field(default_factory=CommonEndpoints)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _require_dict(data: Any, where: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be an object")
    return data


def parse_service(data: Dict[str, Any]) -> ServiceConfig:
    data = _require_dict(data, "services[]")
    name = data.get("name") or ""
    if not name:
        raise ConfigError("service name expected")

    params = _require_dict(data.get("wx-params", {}), f"wx-params of service {name}")
    endpoints = _require_dict(data.get("listen-endpoints", {}), f"listen-endpoints of service {name}")
    service_path = endpoints.get("service-path") or ""
    if not service_path:
        raise ConfigError(f"listen-endpoints/service-path of service {name} expected")

    try:
        timeout = int(data.get("timeout", 0) or 0)
    except (TypeError, ValueError):
        raise ConfigError(f"timeout of service {name} must be an integer")

    return ServiceConfig(
        name=name,
        wx_params=WxParams(
            token=params.get("token") or "",
            app_id=params.get("app-id") or "",
            app_secret=params.get("app-secret") or "",
            aes_key=params.get("aes-key") or None,
        ),
        endpoints=ServiceEndpoints(
            service_path=service_path,
            redirect_path=endpoints.get("redirect-path") or "",
        ),
        timeout=timeout,
        msg_proxy_pass=data.get("msg-proxy-pass") or "",
        redirect_url=data.get("redirect-url") or "",
        redirect_userinfo=_truthy(data.get("redirect-userinfo-flag", False)),
    )


def parse_gateway_config(data: Dict[str, Any]) -> GatewayConfig:
    data = _require_dict(data, "gateway configuration")
    services = data.get("services") or []
    if not isinstance(services, list) or not services:
        raise ConfigError("at least one service expected in services")

    common = _require_dict(data.get("common-endpoints", {}) or {}, "common-endpoints")
    try:
        port = int(data.get("listen-port", 7080))
    except (TypeError, ValueError):
        raise ConfigError("listen-port must be an integer")

    return GatewayConfig(
        listen_host=data.get("listen-host") or "",
        listen_port=port,
        token_cache_dir=data.get("token-cache-dir") or "",
        dont_append_userinfo=_truthy(data.get("dont-append-userinfo", False)),
        services=[parse_service(s) for s in services],
        common_endpoints=CommonEndpoints(
            health_check=common.get("health-check") or "",
            wx_qr=common.get("wx-qr") or "",
            wx_user=common.get("wx-user") or "",
            sns_api=common.get("sns-api") or "",
            short_url=common.get("short-url") or "",
        ),
    )


def load_gateway_config(path: Path = GATEWAY_CONF_PATH) -> GatewayConfig:
    if not path.exists():
        raise ConfigError(f"configuration file {path} not found")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"configuration file {path} is not valid JSON: {e}")

    conf = parse_gateway_config(data)
    log.info(
        "config_loaded path=%s services=%s token_cache_dir=%s",
        str(path), [s.name for s in conf.services], conf.token_cache_dir,
    )
    return conf


def error_response(status_code: int, message: str) -> JSONResponse:
    """Return the gateway's uniform error envelope."""
    return JSONResponse(
        status_code=status_code,
        content={"code": status_code, "msg": message},
    )


def ok_response(**fields: Any) -> Dict[str, Any]:
    return {"code": 200, "msg": "OK", **fields}
