"""Service registry, built once at startup and read-only afterwards."""

import base64
import binascii
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from wx_gateway.auth import is_valid_token_secret
from wx_gateway.config import GatewayConfig, ServiceConfig, ServiceEndpoints, log
from wx_gateway.errors import ClientInputError, ConfigError
from wx_gateway.handlers import LocalMessageHandler, MessageHandler, ProxyMessageHandler
from wx_gateway.store import TokenStore
from wx_gateway.token_cache import AccessTokenCache
from wx_gateway.wxclient import WxClient


@dataclass(frozen=True)
class ServiceCredentials:
    name: str
    token_secret: str
    app_id: str
    app_secret: str
    aes_key: Optional[bytes] = None

    def __repr__(self) -> str:
        return f"ServiceCredentials(name={self.name!r}, app_id={self.app_id!r})"


@dataclass(frozen=True)
class ServiceEntry:
    credentials: ServiceCredentials
    token_cache: AccessTokenCache
    message_handler: MessageHandler
    endpoints: ServiceEndpoints
    timeout: int = 0
    redirect_url: str = ""
    redirect_userinfo: bool = False

    @property
    def name(self) -> str:
        return self.credentials.name


def decode_aes_key(name: str, aes_key: Optional[str]) -> Optional[bytes]:
    """Decode the platform's 43-character EncodingAESKey into 32 key bytes."""
    if not aes_key:
        return None
    try:
        key = base64.b64decode(aes_key + "=", validate=True)
    except (binascii.Error, ValueError):
        raise ConfigError(f"aes-key of service {name} is not valid base64")
    if len(key) != 32:
        raise ConfigError(f"aes-key of service {name} must decode to 32 bytes")
    return key


class ServiceRegistry:
    def __init__(
        self,
        client: WxClient,
        token_store: Optional[TokenStore] = None,
        dont_append_userinfo: bool = False,
    ):
        self.client = client
        self.token_store = token_store
        self.dont_append_userinfo = dont_append_userinfo
        self._entries: Dict[str, ServiceEntry] = {}
        self._frozen = False

    def __iter__(self) -> Iterator[ServiceEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def freeze(self) -> None:
        self._frozen = True

    def register(self, conf: ServiceConfig) -> ServiceEntry:
        if self._frozen:
            raise ConfigError("service registry is read-only after startup")

        name = conf.name
        params = conf.wx_params
        if name in self._entries:
            raise ConfigError(f"duplicate service name {name}")
        if any(e.endpoints.service_path == conf.endpoints.service_path for e in self):
            raise ConfigError(f"service-path {conf.endpoints.service_path} of service {name} already in use")
        if not is_valid_token_secret(params.token):
            raise ConfigError(f"token of service {name} must be 3-32 letters or digits")
        if not params.app_id or not params.app_secret:
            raise ConfigError(f"app-id and app-secret of service {name} expected")
        if conf.redirect_url and not conf.endpoints.redirect_path:
            raise ConfigError(
                f"listen-endpoints/redirect-path in service {name} must be specified "
                f"if you want to use redirect-url"
            )

        credentials = ServiceCredentials(
            name=name,
            token_secret=params.token,
            app_id=params.app_id,
            app_secret=params.app_secret,
            aes_key=decode_aes_key(name, params.aes_key),
        )
        token_cache = AccessTokenCache(
            name, params.app_id, params.app_secret,
            self.client.fetch_access_token,
            token_store=self.token_store,
        )

        handler: MessageHandler
        if conf.msg_proxy_pass:
            handler = ProxyMessageHandler(
                conf.msg_proxy_pass,
                self.client,
                token_cache,
                timeout=conf.timeout or None,
                append_user_info=not self.dont_append_userinfo,
            )
        else:
            handler = LocalMessageHandler()

        entry = ServiceEntry(
            credentials=credentials,
            token_cache=token_cache,
            message_handler=handler,
            endpoints=conf.endpoints,
            timeout=conf.timeout,
            redirect_url=conf.redirect_url,
            redirect_userinfo=conf.redirect_userinfo,
        )
        self._entries[name] = entry
        log.info(
            "service_registered service=%s path=%s handler=%s",
            name, conf.endpoints.service_path, handler.kind,
        )
        return entry

    def resolve(self, name: str) -> ServiceEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise ClientInputError(f"unknown service name {name}")
        return entry


def build_registry(conf: GatewayConfig, client: WxClient) -> ServiceRegistry:
    token_store = TokenStore(Path(conf.token_cache_dir)) if conf.token_cache_dir else None
    registry = ServiceRegistry(client, token_store, conf.dont_append_userinfo)
    for service in conf.services:
        registry.register(service)
    registry.freeze()
    return registry
