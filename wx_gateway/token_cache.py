"""Per-service access token cache.

A fresh token is handed out without awaiting anything. Once the token is
within ``safety_margin`` seconds of expiry, the first caller starts a single
refresh task; every other caller for the same service awaits that task
instead of issuing its own call to the token endpoint. A failed refresh is
reported to all of them, the stale token is dropped, and the next call
starts over.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Tuple

from wx_gateway.config import TOKEN_SAFETY_MARGIN, log
from wx_gateway.errors import UpstreamError

if TYPE_CHECKING:
    from wx_gateway.store import TokenStore

TokenFetcher = Callable[[str, str], Awaitable[Tuple[str, int]]]


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float


class AccessTokenCache:
    def __init__(
        self,
        service: str,
        app_id: str,
        app_secret: str,
        fetcher: TokenFetcher,
        token_store: Optional["TokenStore"] = None,
        safety_margin: int = TOKEN_SAFETY_MARGIN,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.app_id = app_id
        self._app_secret = app_secret
        self._fetcher = fetcher
        self._store = token_store
        self.safety_margin = safety_margin
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._refresh_at = 0.0
        self._pending: Optional[asyncio.Task] = None

        if token_store is not None:
            token = token_store.load(app_id)
            if token is not None:
                self._token = token
                self._refresh_at = token.expires_at - safety_margin

    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    @property
    def refreshing(self) -> bool:
        return self._pending is not None

    def is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._refresh_at

    def invalidate(self, value: str) -> bool:
        """Drop the cached token if it is still the one the platform rejected.

        A newer token fetched while the rejected call was in flight is kept.
        """
        token = self._token
        if token is None or token.value != value:
            log.debug("token_invalidate_skipped service=%s", self.service)
            return False
        log.info("token_invalidated service=%s", self.service)
        self._token = None
        self._refresh_at = 0.0
        return True

    async def get_valid_token(self) -> str:
        if self.is_fresh():
            return self._token.value

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._refresh())
            self._pending.add_done_callback(_consume_exception)
        else:
            log.debug("token_refresh_join service=%s", self.service)

        # shield: a cancelled caller must not cancel the refresh others await
        token = await asyncio.shield(self._pending)
        return token.value

    async def _refresh(self) -> AccessToken:
        log.info("token_refresh_enter service=%s", self.service)
        try:
            value, ttl = await self._fetcher(self.app_id, self._app_secret)
        except UpstreamError as e:
            self._token = None
            log.warning("token_refresh_failed service=%s err=%s", self.service, e)
            raise
        except Exception as e:
            self._token = None
            log.exception("token_refresh_error service=%s", self.service)
            raise UpstreamError(f"access token refresh failed: {e}") from e
        finally:
            self._pending = None

        now = self._clock()
        token = AccessToken(value, now + ttl)
        # short-lived tokens keep at least half their lifetime usable
        margin = min(self.safety_margin, ttl // 2)
        self._token = token
        self._refresh_at = token.expires_at - margin
        log.info("token_refresh_exit service=%s ttl=%s margin=%s", self.service, ttl, margin)

        if self._store is not None:
            try:
                self._store.save(self.app_id, token)
            except OSError as e:
                log.warning("token_save_failed service=%s err=%s", self.service, e)
        return token


def _consume_exception(task: asyncio.Task) -> None:
    # every waiter may have been cancelled; retrieve the error so it is not reported as lost
    if not task.cancelled():
        task.exception()
