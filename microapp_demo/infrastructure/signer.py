"""用户数据存储签名"""

import hashlib
import hmac
from typing import Callable, Optional

SIG_METHOD = "hmac_sha256"

Signer = Callable[[bytes, Optional[bytes]], str]


def sign_payload(payload: bytes, session_key: Optional[bytes] = None) -> str:
    """
    HMAC-SHA256 over the full payload keyed by the user's session key.

    Returns the lowercase hex digest. An empty or missing key is accepted.
    """
    mac = hmac.new(session_key or b"", payload, hashlib.sha256)
    return mac.hexdigest()
