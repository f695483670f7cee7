"""App Store Connect credentials and ES256 token signing."""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm
from jwt.api_jws import PyJWS
from jwt.utils import der_to_raw_signature

logger = logging.getLogger(__name__)

TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_ALGORITHM = "ES256"
TOKEN_LIFETIME_SECONDS = 20 * 60

_P256_CURVE_NAMES = {"secp256r1", "prime256v1"}


class AppleStoreConfigError(RuntimeError):
    """Raised when required Apple configuration is missing or invalid."""


class AppleStoreAuthError(AppleStoreConfigError):
    """Raised when the API key cannot be used to authenticate."""


class KeyReadError(AppleStoreAuthError):
    """Raised when the private key file is missing, unreadable or not a P-256 key."""


class TokenEncodingError(AppleStoreAuthError):
    """Raised when the token claims cannot be serialized."""


@dataclass(frozen=True)
class Credentials:
    key_id: str
    issuer_id: str
    private_key: ec.EllipticCurvePrivateKey = field(repr=False)


@dataclass(frozen=True)
class SignedToken:
    value: str
    issued_at: int
    expires_at: int


class _DeterministicES256(ECAlgorithm):
    """ES256 handler producing RFC 6979 (deterministic nonce) signatures."""

    def __init__(self) -> None:
        super().__init__(ECAlgorithm.SHA256)

    def sign(self, msg: bytes, key: Any) -> bytes:
        der_sig = key.sign(msg, ec.ECDSA(self.hash_alg(), deterministic_signing=True))
        return der_to_raw_signature(der_sig, key.curve)


def _build_signer() -> PyJWS:
    signer = PyJWS(algorithms=[TOKEN_ALGORITHM])
    signer.unregister_algorithm(TOKEN_ALGORITHM)
    signer.register_algorithm(TOKEN_ALGORITHM, _DeterministicES256())
    return signer


_SIGNER = _build_signer()


def _ensure_p256(key: object) -> ec.EllipticCurvePrivateKey:
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise KeyReadError("Apple API 비공개 키는 ES256(ECDSA, P-256) 키여야 합니다.")
    curve_name = getattr(key.curve, "name", "")
    if curve_name not in _P256_CURVE_NAMES:
        raise KeyReadError("Apple API 비공개 키는 P-256 곡선을 사용해야 합니다.")
    return key


def _coerce_private_key(
    private_key: Union[str, bytes, ec.EllipticCurvePrivateKey]
) -> ec.EllipticCurvePrivateKey:
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return _ensure_p256(private_key)

    if isinstance(private_key, str):
        private_key = private_key.encode("utf-8")
    if not isinstance(private_key, bytes):
        raise KeyReadError("Apple API 비공개 키는 PEM 문자열이어야 합니다.")

    try:
        loaded = serialization.load_pem_private_key(private_key, password=None)
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        raise KeyReadError(
            "Apple API 비공개 키를 읽을 수 없습니다. 키 파일이 손상되지 않았는지 확인해 주세요."
        ) from exc
    return _ensure_p256(loaded)


def default_private_key_path(key_id: str, base_dir: str) -> str:
    """Return the conventional ``AuthKey_<key id>.p8`` location inside ``base_dir``."""
    return os.path.join(base_dir, f"AuthKey_{key_id}.p8")


def load_private_key(path: str) -> ec.EllipticCurvePrivateKey:
    try:
        with open(path, "r", encoding="utf-8") as fp:
            contents = fp.read()
    except OSError as exc:
        raise KeyReadError(f"비공개 키 파일을 읽을 수 없습니다({path}): {exc}") from exc
    except UnicodeDecodeError as exc:
        raise KeyReadError(f"비공개 키 파일이 텍스트(PEM) 형식이 아닙니다: {path}") from exc

    contents = contents.lstrip("\ufeff").strip()
    if "-----BEGIN" not in contents or "PRIVATE KEY-----" not in contents:
        raise KeyReadError(
            "Apple API 비공개 키 파일 형식이 올바르지 않습니다. "
            "App Store Connect에서 내려받은 .p8 파일인지 확인해 주세요."
        )
    return _coerce_private_key(contents + "\n")


def load_credentials(key_id: str, issuer_id: str, key_path: str) -> Credentials:
    private_key = load_private_key(key_path)
    logger.info("Loaded App Store Connect key %s from %s", key_id, key_path)
    return Credentials(key_id=key_id, issuer_id=issuer_id, private_key=private_key)


def sign(
    key_id: str,
    issuer_id: str,
    private_key: Union[str, bytes, ec.EllipticCurvePrivateKey],
    now: Optional[Union[float, _dt.datetime]] = None,
) -> SignedToken:
    """Sign a short-lived App Store Connect token.

    The header carries ``alg=ES256`` and the key id; the claims carry the
    issuer, ``iat``/``exp`` (``exp = iat + 1200``) and the fixed audience. The
    same ``now`` always yields the same token for a given key.
    """

    if not key_id:
        raise AppleStoreAuthError("Key ID가 비어 있습니다.")
    if not issuer_id:
        raise AppleStoreAuthError("Issuer ID가 비어 있습니다.")

    key = _coerce_private_key(private_key)

    if now is None:
        now = time.time()
    elif isinstance(now, _dt.datetime):
        now = now.timestamp()
    issued_at = int(now)
    expires_at = issued_at + TOKEN_LIFETIME_SECONDS

    claims: Dict[str, Any] = {
        "iss": issuer_id,
        "iat": issued_at,
        "exp": expires_at,
        "aud": TOKEN_AUDIENCE,
    }
    try:
        payload = json.dumps(claims, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise TokenEncodingError("JWT 클레임을 직렬화할 수 없습니다.") from exc

    value = _SIGNER.encode(payload, key, algorithm=TOKEN_ALGORITHM, headers={"kid": key_id})
    return SignedToken(value=value, issued_at=issued_at, expires_at=expires_at)


def sign_token(credentials: Credentials, now: Optional[float] = None) -> SignedToken:
    return sign(credentials.key_id, credentials.issuer_id, credentials.private_key, now)
