"""Batch configuration and environment settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from apple_auth import AppleStoreConfigError, default_private_key_path
from apple_store import DEFAULT_API_BASE_URL, DEFAULT_API_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "iap_config.json"
DEFAULT_SCREENSHOT_FILE = "review.png"
CONFIG_PATH_ENV = "IAP_CONFIG_PATH"

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_KEY_ID_RE = re.compile(r"^[A-Z0-9]{10}$")


class IapBatchConfig(BaseModel):
    """Contents of ``iap_config.json``.

    Keys may be written in snake_case or camelCase. After :func:`load_batch_config`
    both file paths are absolute.
    """

    model_config = ConfigDict(frozen=True)

    key_id: str = Field(..., validation_alias=AliasChoices("key_id", "keyId"))
    issuer_id: str = Field(..., validation_alias=AliasChoices("issuer_id", "issuerId"))
    product_id_prefix: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("product_id_prefix", "productIdPrefix")
    )
    app_id: str = Field(..., min_length=1, validation_alias=AliasChoices("app_id", "appId"))
    prices: List[Decimal] = Field(..., min_length=1)
    private_key_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("private_key_path", "privateKeyPath")
    )
    screenshot_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("screenshot_path", "screenshotPath")
    )

    @field_validator("key_id")
    @classmethod
    def validate_key_id(cls, value: str) -> str:
        value = value.strip().upper()
        if not _KEY_ID_RE.match(value):
            raise ValueError("key_id 값이 올바른 Key ID 형식(대문자 영숫자 10자)인지 확인해 주세요.")
        return value

    @field_validator("issuer_id")
    @classmethod
    def validate_issuer_id(cls, value: str) -> str:
        value = value.strip()
        if not _UUID_RE.match(value):
            raise ValueError("issuer_id 값이 올바른 Issuer ID 형식(UUID)인지 확인해 주세요.")
        return value

    @field_validator("app_id", mode="before")
    @classmethod
    def coerce_app_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("prices")
    @classmethod
    def validate_prices(cls, prices: List[Decimal]) -> List[Decimal]:
        for price in prices:
            if not price.is_finite() or price <= 0:
                raise ValueError(f"가격은 0보다 큰 숫자여야 합니다: {price}")
        return prices


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def resolve_config_path(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    return env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_FILE


def load_batch_config(path: str) -> IapBatchConfig:
    config_path = os.path.abspath(path)
    try:
        with open(config_path, "r", encoding="utf-8") as fp:
            raw = json.load(fp, parse_float=Decimal)
    except FileNotFoundError as exc:
        raise AppleStoreConfigError(f"설정 파일이 존재하지 않습니다: {config_path}") from exc
    except OSError as exc:
        raise AppleStoreConfigError(f"설정 파일을 읽을 수 없습니다({config_path}): {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AppleStoreConfigError(f"설정 파일 JSON 파싱에 실패했습니다: {exc}") from exc

    if not isinstance(raw, dict):
        raise AppleStoreConfigError("설정 파일은 JSON 객체 형식이어야 합니다.")

    try:
        config = IapBatchConfig.model_validate(raw)
    except ValidationError as exc:
        raise AppleStoreConfigError(
            f"설정 파일 값이 올바르지 않습니다: {_summarize_validation_error(exc)}"
        ) from exc

    base_dir = os.path.dirname(config_path)
    key_path = config.private_key_path or default_private_key_path(config.key_id, base_dir)
    screenshot_path = config.screenshot_path or DEFAULT_SCREENSHOT_FILE
    resolved = config.model_copy(
        update={
            "private_key_path": os.path.join(base_dir, key_path),
            "screenshot_path": os.path.join(base_dir, screenshot_path),
        }
    )
    logger.debug("Loaded batch configuration from %s (%d prices)", config_path, len(resolved.prices))
    return resolved


@dataclass(frozen=True)
class ApiSettings:
    base_url: str = DEFAULT_API_BASE_URL
    timeout: float = DEFAULT_API_TIMEOUT
    log_level: str = "INFO"
    log_dir: Optional[str] = None


def load_api_settings(environ: Optional[Mapping[str, str]] = None) -> ApiSettings:
    env = os.environ if environ is None else environ

    raw_timeout = env.get("APPLE_API_TIMEOUT")
    timeout: float = DEFAULT_API_TIMEOUT
    if raw_timeout:
        try:
            timeout = float(raw_timeout)
        except ValueError as exc:
            raise AppleStoreConfigError(
                f"환경 변수 'APPLE_API_TIMEOUT' 값은 숫자여야 합니다: {raw_timeout}"
            ) from exc
        if timeout <= 0:
            raise AppleStoreConfigError("환경 변수 'APPLE_API_TIMEOUT' 값은 0보다 커야 합니다.")

    return ApiSettings(
        base_url=(env.get("APP_STORE_API_BASE_URL") or DEFAULT_API_BASE_URL).strip(),
        timeout=timeout,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        log_dir=env.get("IAP_LOG_DIR") or None,
    )
