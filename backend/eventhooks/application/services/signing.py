import hmac
import json
import re
import secrets
from hashlib import sha256
from typing import Any

from eventhooks.core.exceptions import ConfigurationError

SIGNATURE_SCHEME = "sha256"
SECRET_NUM_BYTES = 32
_SECRET_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def canonical_json(payload: Any) -> bytes:
    """Serialize with sorted keys and compact separators; these bytes are both signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign_bytes(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()


def sign(payload: Any, secret: str) -> str:
    return sign_bytes(canonical_json(payload), secret)


def signature_header_value(digest: str) -> str:
    return f"{SIGNATURE_SCHEME}={digest}"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Receiver-side check accepting ``sha256=<hex>`` or a bare hex digest."""
    if not signature or not secret:
        return False
    provided = signature.strip()
    prefix = f"{SIGNATURE_SCHEME}="
    if provided.startswith(prefix):
        provided = provided[len(prefix):]
    return hmac.compare_digest(sign_bytes(body, secret), provided.lower())


def generate_secret() -> str:
    return secrets.token_hex(SECRET_NUM_BYTES)


def validate_secret(secret: Any) -> str:
    if not isinstance(secret, str) or not _SECRET_PATTERN.match(secret):
        raise ConfigurationError("Subscription secret must be 64 lowercase hex characters")
    return secret
