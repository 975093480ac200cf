import hashlib
import hmac as hmac_lib
import re
import time
from typing import Optional

from wx_gateway.config import log

_TOKEN_RE = re.compile(r"^[A-Za-z0-9]{3,32}$")


def is_valid_token_secret(token_secret: Optional[str]) -> bool:
    """The platform accepts 3-32 letters or digits as the webhook token."""
    return bool(token_secret) and _TOKEN_RE.match(token_secret) is not None


def make_signature(token_secret: str, timestamp: str, nonce: str) -> str:
    """sha1 hex digest of the sorted, concatenated token, timestamp and nonce."""
    joined = "".join(sorted([token_secret, timestamp, nonce]))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def verify_signature(
    token_secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    nonce: Optional[str],
    window: int = 0,
    rid: str = "unknown",
    now: Optional[float] = None,
) -> bool:
    """Check a webhook request's signature query parameters.

    ``window`` > 0 additionally rejects timestamps further than that many
    seconds from now.
    """
    if not signature or not timestamp or nonce is None:
        log.warning("signature_params_missing rid=%s ts=%s", rid, timestamp)
        return False

    if window > 0:
        try:
            ts = int(timestamp)
        except ValueError:
            log.warning("signature_timestamp_invalid rid=%s timestamp=%s", rid, timestamp)
            return False
        skew = abs((time.time() if now is None else now) - ts)
        if skew > window:
            log.warning("signature_replay_window rid=%s ts=%s skew=%s", rid, ts, int(skew))
            return False

    expected = make_signature(token_secret, timestamp, nonce)
    ok = hmac_lib.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
    if not ok:
        log.warning("signature_mismatch rid=%s", rid)
    else:
        log.debug("signature_check rid=%s ok=True", rid)
    return ok
