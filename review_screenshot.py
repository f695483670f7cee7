"""App Store review screenshot upload for in-app purchases.

Attaching a screenshot is a three step exchange with App Store Connect:

1. reserve an ``inAppPurchaseAppStoreReviewScreenshots`` record, which answers
   with one or more upload operations against pre-signed URLs,
2. send each byte range of the file to its pre-signed URL,
3. commit the record with the file's MD5 checksum.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import requests

from apple_store import AppStoreConnectClient

logger = logging.getLogger(__name__)

SCREENSHOT_RESOURCE_PATH = "/v1/inAppPurchaseAppStoreReviewScreenshots"
UPLOAD_COMPLETE = "UPLOAD_COMPLETE"

_UPLOAD_TIMEOUT = 60
_MD5_READ_SIZE = 64 * 1024


class MissingAssetError(RuntimeError):
    """Raised when the screenshot file does not exist."""


class ScreenshotUploadError(RuntimeError):
    """Raised when a pre-signed upload operation is rejected."""

    def __init__(self, status_code: int, body_text: str = "") -> None:
        self.status_code = status_code
        self.body_text = body_text
        super().__init__(f"스크린샷 업로드 실패: {status_code}")


@dataclass(frozen=True)
class ScreenshotUploadResult:
    screenshot_id: str
    delivery_state: Optional[str]
    checksum: str

    @property
    def complete(self) -> bool:
        return self.delivery_state == UPLOAD_COMPLETE


def file_md5(path: str) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fp:
        for block in iter(lambda: fp.read(_MD5_READ_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def read_file_chunk(path: str, offset: Optional[int], length: Optional[int]) -> bytes:
    """Read ``length`` bytes at ``offset``; a missing length reads to end of file."""
    with open(path, "rb") as fp:
        fp.seek(int(offset or 0))
        if length is None:
            return fp.read()
        return fp.read(int(length))


def _extract_delivery_state(attributes: Dict[str, Any]) -> Optional[str]:
    state = attributes.get("assetDeliveryState")
    if isinstance(state, dict):
        state = state.get("state")
    return state if isinstance(state, str) else None


class ReviewScreenshotUploader:
    def __init__(
        self,
        client: AppStoreConnectClient,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = _UPLOAD_TIMEOUT,
    ) -> None:
        self._client = client
        self._session = session if session is not None else client.session
        self._timeout = timeout

    def reserve(self, iap_id: str, file_name: str, file_size: int) -> Dict[str, Any]:
        payload = {
            "data": {
                "type": "inAppPurchaseAppStoreReviewScreenshots",
                "attributes": {
                    "fileName": file_name,
                    "fileSize": file_size,
                },
                "relationships": {
                    "inAppPurchaseV2": {
                        "data": {"type": "inAppPurchases", "id": iap_id},
                    },
                },
            }
        }
        response = self._client.create_resource(SCREENSHOT_RESOURCE_PATH, payload)
        data = response.get("data")
        if not isinstance(data, dict) or not data.get("id"):
            raise RuntimeError("스크린샷 예약 응답에 ID가 없습니다.")
        return data

    def upload_chunks(self, operations: Iterable[Dict[str, Any]], file_path: str) -> None:
        for index, operation in enumerate(operations or [], start=1):
            method = operation.get("method") or "PUT"
            url = operation.get("url")
            if not url:
                raise RuntimeError(f"업로드 작업 {index}에 URL이 없습니다.")
            headers = {
                header.get("name"): header.get("value")
                for header in operation.get("requestHeaders") or []
                if header.get("name")
            }
            chunk = read_file_chunk(file_path, operation.get("offset"), operation.get("length"))

            response = self._session.request(
                method, url, headers=headers, data=chunk, timeout=self._timeout
            )
            if response.status_code >= 400:
                body_text = (response.text or "").strip()
                logger.error(
                    "Screenshot chunk %d upload failed with %s: %s",
                    index,
                    response.status_code,
                    body_text or "No response body",
                )
                raise ScreenshotUploadError(response.status_code, body_text)
            logger.info("Uploaded screenshot chunk %d (%d bytes)", index, len(chunk))

    def commit(self, screenshot_id: str, checksum: str) -> Dict[str, Any]:
        payload = {
            "data": {
                "type": "inAppPurchaseAppStoreReviewScreenshots",
                "id": screenshot_id,
                "attributes": {
                    "uploaded": True,
                    "sourceFileChecksum": checksum,
                },
            }
        }
        return self._client.update_resource(f"{SCREENSHOT_RESOURCE_PATH}/{screenshot_id}", payload)

    def upload(self, iap_id: str, file_path: str) -> ScreenshotUploadResult:
        if not os.path.isfile(file_path):
            raise MissingAssetError(f"스크린샷 파일이 존재하지 않습니다: {file_path}")

        file_size = os.path.getsize(file_path)
        checksum = file_md5(file_path)

        logger.info("Step 1: reserving review screenshot for IAP %s", iap_id)
        reservation = self.reserve(iap_id, os.path.basename(file_path), file_size)
        screenshot_id = reservation["id"]
        operations = (reservation.get("attributes") or {}).get("uploadOperations") or []
        logger.info("Screenshot ID: %s (%d upload operations)", screenshot_id, len(operations))

        logger.info("Step 2: uploading screenshot data")
        self.upload_chunks(operations, file_path)

        logger.info("Step 3: committing screenshot")
        committed = self.commit(screenshot_id, checksum)
        state = _extract_delivery_state((committed.get("data") or {}).get("attributes") or {})
        result = ScreenshotUploadResult(screenshot_id=screenshot_id, delivery_state=state, checksum=checksum)

        if result.complete:
            logger.info("Screenshot %s upload complete", screenshot_id)
        else:
            logger.warning("Screenshot %s delivery state is %s", screenshot_id, state)
        return result
