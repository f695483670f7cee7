"""App Store Connect API client for in-app purchase provisioning."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from apple_auth import Credentials, sign_token

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.appstoreconnect.apple.com"
DEFAULT_API_TIMEOUT = 60

BASE_TERRITORY = "USA"
DEFAULT_LOCALE = "en-US"
IAP_TYPE_CONSUMABLE = "CONSUMABLE"

# pricePoints is read as one oversized page instead of following cursors
_PRICE_POINT_PAGE_LIMIT = 8000
_TERRITORY_PAGE_LIMIT = 200

# Local id App Store Connect resolves inside a single create request.
NEW_PRICE_PLACEHOLDER_ID = "${newprice-0}"


def _normalize_error_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in ("id", "status", "code", "title", "detail"):
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, (str, int)):
            normalized[key] = str(value)
        else:
            normalized[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return normalized


def _summarize_api_errors(errors: Iterable[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        normalized = _normalize_error_entry(entry)
        code = normalized.get("code") or normalized.get("status")
        detail = normalized.get("detail") or normalized.get("title")
        if code or detail:
            snippet = " ".join(filter(None, [f"[{code}]" if code else "", detail]))
            parts.append(snippet)
    return "; ".join(parts)


def _parse_error_entries(body_text: str) -> List[Dict[str, Any]]:
    if not body_text:
        return []
    try:
        payload = json.loads(body_text)
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, dict):
        return []
    raw_errors = payload.get("errors")
    if not isinstance(raw_errors, list):
        return []
    return [entry for entry in raw_errors if isinstance(entry, dict)]


class AppleStoreApiError(RuntimeError):
    """Represents an error response returned by the Apple API."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.status_code = status_code
        self.body_text = body_text
        self.errors = errors or []
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        if self.errors:
            summary = _summarize_api_errors(self.errors)
            if summary:
                return f"Apple API 오류 {self.status_code}: {summary}"
        return f"Apple API 요청 실패: {self.status_code}"


@dataclass
class TerritoryCache:
    """Territory ids owned by one client.

    ``territories`` stays ``None`` until the first non-empty fetch and is never
    replaced afterwards.
    """

    territories: Optional[Tuple[str, ...]] = None

    @property
    def populated(self) -> bool:
        return self.territories is not None

    def store(self, territories: Iterable[str]) -> Tuple[str, ...]:
        if self.territories is None:
            self.territories = tuple(territories)
        return self.territories


@dataclass(frozen=True)
class AvailabilityOutcome:
    applied: bool
    territory_count: int = 0
    error: Optional[str] = None


def _to_decimal(value: object) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def match_price_point(
    price_points: Iterable[Dict[str, Any]],
    price: object,
    *,
    numeric_match: bool = False,
) -> Optional[str]:
    """Return the id of the price point whose ``customerPrice`` equals ``price``.

    Matching compares ``str(price)`` with ``customerPrice`` verbatim, so ``4``
    does not match ``"4.00"``. ``numeric_match`` opts into a Decimal comparison
    when no exact match exists.
    """

    points = [point for point in price_points or [] if isinstance(point, dict)]
    if not points:
        return None

    target = str(price)
    for point in points:
        attributes = point.get("attributes") or {}
        if attributes.get("customerPrice") == target:
            return point.get("id")

    if not numeric_match:
        return None

    target_value = _to_decimal(price)
    if target_value is None:
        return None
    for point in points:
        attributes = point.get("attributes") or {}
        customer_price = attributes.get("customerPrice")
        if customer_price is None:
            continue
        if _to_decimal(customer_price) == target_value:
            logger.warning(
                "Price %s matched price point %s (%s) numerically, not verbatim",
                target,
                point.get("id"),
                customer_price,
            )
            return point.get("id")
    return None


class AppStoreConnectClient:
    """Authenticated access to the App Store Connect REST API.

    Every request is signed with a freshly generated token. Responses with a
    status of 400 or above raise :class:`AppleStoreApiError`; there is no retry.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = DEFAULT_API_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.territory_cache = TerritoryCache()

    def _auth_headers(self) -> Dict[str, str]:
        token = sign_token(self.credentials)
        return {
            "Authorization": f"Bearer {token.value}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        base_url = self.base_url
        # a base ending in /v1 must not double the version prefix
        if path.startswith(("/v1/", "/v2/")) and base_url.endswith("/v1"):
            base_url = base_url[: -len("/v1")] or base_url
        return base_url + path

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._build_url(path)
        logger.debug("Apple API Request %s %s", method, url)
        if logger.isEnabledFor(logging.DEBUG) and params:
            logger.debug("  Params: %s", params)

        response = self.session.request(
            method,
            url,
            headers=self._auth_headers(),
            params=params,
            json=json,
            timeout=self.timeout,
        )

        if response.status_code >= 400:
            body_text = (response.text or "").strip()
            errors = _parse_error_entries(body_text)
            logger.error(
                "Apple API error %s: %s | URL: %s",
                response.status_code,
                body_text or "No response body",
                url,
            )
            raise AppleStoreApiError(response.status_code, body_text, errors)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def create_resource(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", path, json=body)

    def get_resource(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("GET", path, params=params)

    def update_resource(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", path, json=body)

    def create_in_app_purchase(self, app_id: str, name: str, product_id: str) -> Dict[str, Any]:
        payload = {
            "data": {
                "type": "inAppPurchases",
                "attributes": {
                    "name": name,
                    "productId": product_id,
                    "inAppPurchaseType": IAP_TYPE_CONSUMABLE,
                },
                "relationships": {
                    "app": {
                        "data": {"type": "apps", "id": app_id},
                    },
                },
            }
        }
        result = self.create_resource("/v2/inAppPurchases", payload).get("data")
        if not isinstance(result, dict) or not result.get("id"):
            raise RuntimeError(f"인앱 상품 생성에 실패했습니다: {product_id}")
        logger.info("Created in-app purchase %s (%s)", result["id"], product_id)
        return result

    def create_localization(
        self,
        iap_id: str,
        display_name: str,
        description: str,
        locale: str = DEFAULT_LOCALE,
    ) -> Dict[str, Any]:
        payload = {
            "data": {
                "type": "inAppPurchaseLocalizations",
                "attributes": {
                    "locale": locale,
                    "name": display_name,
                    "description": description,
                },
                "relationships": {
                    "inAppPurchaseV2": {
                        "data": {"type": "inAppPurchases", "id": iap_id},
                    },
                },
            }
        }
        return self.create_resource("/v1/inAppPurchaseLocalizations", payload)

    def get_price_points(self, iap_id: str, territory: str = BASE_TERRITORY) -> List[Dict[str, Any]]:
        params = {
            "include": "territory",
            "filter[territory]": territory,
            "limit": _PRICE_POINT_PAGE_LIMIT,
        }
        response = self.get_resource(f"/v2/inAppPurchases/{iap_id}/pricePoints", params=params)
        data = response.get("data") or []
        logger.debug("Loaded %d %s price points for IAP %s", len(data), territory, iap_id)
        return data

    def find_price_point_for_price(
        self, iap_id: str, price: object, *, numeric_match: bool = False
    ) -> Optional[str]:
        return match_price_point(
            self.get_price_points(iap_id), price, numeric_match=numeric_match
        )

    def set_price(
        self, iap_id: str, price_point_id: str, start_date: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {
            "data": {
                "type": "inAppPurchasePriceSchedules",
                "attributes": {},
                "relationships": {
                    "inAppPurchase": {
                        "data": {"type": "inAppPurchases", "id": iap_id},
                    },
                    "manualPrices": {
                        "data": [
                            {"type": "inAppPurchasePrices", "id": NEW_PRICE_PLACEHOLDER_ID},
                        ],
                    },
                    "baseTerritory": {
                        "data": {"type": "territories", "id": BASE_TERRITORY},
                    },
                },
            },
            "included": [
                {
                    "type": "inAppPurchasePrices",
                    "id": NEW_PRICE_PLACEHOLDER_ID,
                    "attributes": {"startDate": start_date},
                    "relationships": {
                        "inAppPurchasePricePoint": {
                            "data": {
                                "type": "inAppPurchasePricePoints",
                                "id": price_point_id,
                            },
                        },
                    },
                },
            ],
        }
        response = self.create_resource("/v1/inAppPurchasePriceSchedules", payload)
        logger.info("Set price point %s for IAP %s (base territory %s)", price_point_id, iap_id, BASE_TERRITORY)
        return response

    def get_all_territories(self) -> Tuple[str, ...]:
        if self.territory_cache.populated:
            return self.territory_cache.territories

        logger.info("Fetching the list of available territories...")
        response = self.get_resource("/v1/territories", params={"limit": _TERRITORY_PAGE_LIMIT})
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, list):
            data = []
        territories = [
            entry["id"]
            for entry in data
            if isinstance(entry, dict) and entry.get("id")
        ]
        if not territories:
            return ()

        cached = self.territory_cache.store(territories)
        logger.info("Fetched %d available territories", len(cached))
        return cached

    def set_global_availability(self, iap_id: str) -> AvailabilityOutcome:
        """Make the IAP available everywhere, including future territories.

        Failures are logged and reported through the returned outcome instead of
        being raised.
        """

        try:
            territories = self.get_all_territories()
        except (AppleStoreApiError, requests.RequestException, ValueError) as exc:
            logger.warning("Could not load territories for IAP %s: %s", iap_id, exc)
            return AvailabilityOutcome(applied=False, error=str(exc))

        if not territories:
            logger.warning("Territory list is empty; skipping global availability for IAP %s", iap_id)
            return AvailabilityOutcome(
                applied=False, error="지역 목록을 가져올 수 없어 전체 판매 지역 설정을 건너뛰었습니다."
            )

        logger.info("Setting global availability for IAP %s across %d territories", iap_id, len(territories))
        payload = {
            "data": {
                "type": "inAppPurchaseAvailabilities",
                "attributes": {
                    "availableInNewTerritories": True,
                },
                "relationships": {
                    "inAppPurchase": {
                        "data": {"type": "inAppPurchases", "id": iap_id},
                    },
                    "availableTerritories": {
                        "data": [
                            {"type": "territories", "id": territory_id}
                            for territory_id in territories
                        ],
                    },
                },
            }
        }
        try:
            self.create_resource("/v1/inAppPurchaseAvailabilities", payload)
        except (AppleStoreApiError, requests.RequestException, ValueError) as exc:
            logger.warning("Failed to set global availability for IAP %s: %s", iap_id, exc)
            return AvailabilityOutcome(applied=False, territory_count=len(territories), error=str(exc))

        logger.info("Global availability set for IAP %s", iap_id)
        return AvailabilityOutcome(applied=True, territory_count=len(territories))
