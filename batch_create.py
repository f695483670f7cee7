"""Batch creation of consumable in-app purchases, one per price."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from apple_store import AppStoreConnectClient, AvailabilityOutcome
from review_screenshot import ReviewScreenshotUploader

logger = logging.getLogger(__name__)


class ItemStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchItemResult:
    price: Decimal
    product_id: str
    status: ItemStatus
    iap_id: Optional[str] = None
    price_point_id: Optional[str] = None
    screenshot_id: Optional[str] = None
    delivery_state: Optional[str] = None
    availability_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ItemStatus.SUCCESS

    @property
    def degraded(self) -> bool:
        """Created, but global availability could not be applied."""
        return self.succeeded and self.availability_error is not None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "price": str(self.price),
            "product_id": self.product_id,
            "status": self.status.value,
        }
        for key in ("iap_id", "price_point_id", "screenshot_id", "delivery_state", "availability_error", "error"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass
class BatchResult:
    items: List[BatchItemResult] = field(default_factory=list)

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> BatchItemResult:
        return self.items[index]

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.items if not item.succeeded)

    @property
    def degraded_count(self) -> int:
        return sum(1 for item in self.items if item.degraded)

    def to_list(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items]


class BatchOrchestrator:
    """Run the creation pipeline for each price, isolating failures per price.

    For every price the steps run in a fixed order, each depending on the IAP id
    returned by the first: create, localize, look up the price point, set the
    price (skipped when no price point matches), make globally available (best
    effort) and attach the review screenshot.
    """

    def __init__(
        self,
        client: AppStoreConnectClient,
        uploader: ReviewScreenshotUploader,
        *,
        product_id_prefix: str,
        screenshot_path: str,
    ) -> None:
        self._client = client
        self._uploader = uploader
        self._product_id_prefix = product_id_prefix
        self._screenshot_path = screenshot_path

    def product_id_for(self, price: Decimal) -> str:
        return f"{self._product_id_prefix}{price}"

    def _create_item(self, app_id: str, price: Decimal, product_id: str) -> BatchItemResult:
        logger.info("Creating in-app purchase for $%s (%s)...", price, product_id)
        created = self._client.create_in_app_purchase(app_id, str(price), product_id)
        iap_id = created["id"]

        logger.info("Creating localization...")
        label = f"${price} package"
        self._client.create_localization(iap_id, label, label)

        logger.info("Looking up price point...")
        price_point_id = self._client.find_price_point_for_price(iap_id, price)
        if price_point_id:
            logger.info("Setting price point %s...", price_point_id)
            self._client.set_price(iap_id, price_point_id)
        else:
            logger.warning("No USA price point matches $%s; price left unset", price)

        logger.info("Setting global availability...")
        availability: AvailabilityOutcome = self._client.set_global_availability(iap_id)

        logger.info("Uploading review screenshot...")
        screenshot = self._uploader.upload(iap_id, self._screenshot_path)

        return BatchItemResult(
            price=price,
            product_id=product_id,
            status=ItemStatus.SUCCESS,
            iap_id=iap_id,
            price_point_id=price_point_id,
            screenshot_id=screenshot.screenshot_id,
            delivery_state=screenshot.delivery_state,
            availability_error=None if availability.applied else availability.error,
        )

    def run(self, app_id: str, prices: Iterable[Decimal]) -> BatchResult:
        result = BatchResult()
        for price in prices:
            product_id = self.product_id_for(price)
            try:
                item = self._create_item(app_id, price, product_id)
            except Exception as exc:
                logger.error("Failed to create in-app purchase for $%s: %s", price, exc)
                logger.debug("Failure details for %s", product_id, exc_info=True)
                item = BatchItemResult(
                    price=price,
                    product_id=product_id,
                    status=ItemStatus.FAILED,
                    error=str(exc) or exc.__class__.__name__,
                )
            else:
                if item.degraded:
                    logger.warning("$%s created without global availability", price)
                logger.info("$%s in-app purchase created", price)
            result.items.append(item)
        return result
