import json
import time
from pathlib import Path
from typing import Optional

from wx_gateway.config import log
from wx_gateway.token_cache import AccessToken


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


class TokenStore:
    """Persists the latest access token of each app under ``<dir>/<app_id>.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, app_id: str) -> Path:
        return self.directory / f"{app_id}.json"

    def save(self, app_id: str, token: AccessToken) -> None:
        ensure_dir(self.directory)
        path = self._path(app_id)
        payload = {"access_token": token.value, "expires_at": token.expires_at}

        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, separators=(",", ":")), encoding="utf-8")
        tmp.replace(path)
        log.info("token_saved app_id=%s expires_at=%d", app_id, int(token.expires_at))

    def load(self, app_id: str) -> Optional[AccessToken]:
        path = self._path(app_id)
        if not path.exists():
            log.info("token_store_missing app_id=%s", app_id)
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            token = AccessToken(str(data["access_token"]), float(data["expires_at"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("token_store_unreadable app_id=%s err=%s", app_id, e)
            return None

        if token.expires_at <= time.time():
            log.info("token_store_expired app_id=%s", app_id)
            return None

        log.info("token_loaded app_id=%s expires_at=%d", app_id, int(token.expires_at))
        return token
