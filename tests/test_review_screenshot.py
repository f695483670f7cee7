from __future__ import annotations

import hashlib

import pytest

from review_screenshot import (
    MissingAssetError,
    ReviewScreenshotUploader,
    ScreenshotUploadError,
    read_file_chunk,
)

API_BASE = "https://api.example.test"
RESERVE_URL = f"{API_BASE}/v1/inAppPurchaseAppStoreReviewScreenshots"
COMMIT_URL = f"{RESERVE_URL}/shot-1"
PART_ONE_URL = "https://upload.example.test/part-1?sig=abc"
PART_TWO_URL = "https://upload.example.test/part-2?sig=def"

FILE_BYTES = bytes(range(100))


@pytest.fixture
def screenshot(tmp_path):
    path = tmp_path / "review.png"
    path.write_bytes(FILE_BYTES)
    return str(path)


def _reservation(*operations):
    return {
        "data": {
            "type": "inAppPurchaseAppStoreReviewScreenshots",
            "id": "shot-1",
            "attributes": {"uploadOperations": list(operations)},
        }
    }


def _operation(url, offset, length=None):
    operation = {
        "method": "PUT",
        "url": url,
        "offset": offset,
        "requestHeaders": [
            {"name": "Content-Type", "value": "image/png"},
            {"name": "x-amz-meta-part", "value": url[-3:]},
        ],
    }
    if length is not None:
        operation["length"] = length
    return operation


def _committed(state):
    return {
        "data": {
            "type": "inAppPurchaseAppStoreReviewScreenshots",
            "id": "shot-1",
            "attributes": {"assetDeliveryState": {"state": state, "errors": []}},
        }
    }


def test_upload_runs_reserve_upload_commit(client, fake_session, screenshot) -> None:
    fake_session.add(
        "POST",
        RESERVE_URL,
        _reservation(_operation(PART_ONE_URL, 0, 60), _operation(PART_TWO_URL, 60)),
    )
    fake_session.add("PUT", PART_ONE_URL, status=200)
    fake_session.add("PUT", PART_TWO_URL, status=200)
    fake_session.add("PATCH", COMMIT_URL, _committed("UPLOAD_COMPLETE"))

    result = ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert result.screenshot_id == "shot-1"
    assert result.complete is True
    assert [call.method for call in fake_session.calls] == ["POST", "PUT", "PUT", "PATCH"]

    reserve_call = fake_session.calls[0]
    assert reserve_call.json["data"]["attributes"] == {"fileName": "review.png", "fileSize": 100}
    assert reserve_call.json["data"]["relationships"] == {
        "inAppPurchaseV2": {"data": {"type": "inAppPurchases", "id": "6450000001"}}
    }

    first_part, second_part = fake_session.calls[1], fake_session.calls[2]
    assert first_part.data == FILE_BYTES[:60]
    assert second_part.data == FILE_BYTES[60:]
    assert first_part.headers == {"Content-Type": "image/png", "x-amz-meta-part": "abc"}
    assert "Authorization" not in second_part.headers

    commit_call = fake_session.calls[3]
    assert commit_call.json == {
        "data": {
            "type": "inAppPurchaseAppStoreReviewScreenshots",
            "id": "shot-1",
            "attributes": {
                "uploaded": True,
                "sourceFileChecksum": hashlib.md5(FILE_BYTES).hexdigest(),
            },
        }
    }
    assert result.checksum == hashlib.md5(FILE_BYTES).hexdigest()


def test_missing_file_fails_before_any_request(client, fake_session, tmp_path) -> None:
    with pytest.raises(MissingAssetError):
        ReviewScreenshotUploader(client).upload("6450000001", str(tmp_path / "review.png"))

    assert fake_session.calls == []


def test_failed_chunk_aborts_without_commit(client, fake_session, screenshot) -> None:
    fake_session.add(
        "POST",
        RESERVE_URL,
        _reservation(_operation(PART_ONE_URL, 0, 60), _operation(PART_TWO_URL, 60, 40)),
    )
    fake_session.add("PUT", PART_ONE_URL, status=403, text="<Error>SignatureDoesNotMatch</Error>")
    fake_session.add("PUT", PART_TWO_URL, status=200)

    with pytest.raises(ScreenshotUploadError) as exc_info:
        ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert exc_info.value.status_code == 403
    assert fake_session.calls_to("PUT", PART_TWO_URL) == []
    assert fake_session.calls_to("PATCH", COMMIT_URL) == []


def test_failed_later_chunk_aborts_without_commit(client, fake_session, screenshot) -> None:
    fake_session.add(
        "POST",
        RESERVE_URL,
        _reservation(_operation(PART_ONE_URL, 0, 60), _operation(PART_TWO_URL, 60, 40)),
    )
    fake_session.add("PUT", PART_ONE_URL, status=200)
    fake_session.add("PUT", PART_TWO_URL, status=403, text="<Error>RequestTimeTooSkewed</Error>")

    with pytest.raises(ScreenshotUploadError) as exc_info:
        ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert exc_info.value.status_code == 403
    assert len(fake_session.calls_to("PUT", PART_ONE_URL)) == 1
    assert len(fake_session.calls_to("PUT", PART_TWO_URL)) == 1
    assert fake_session.calls_to("PATCH", COMMIT_URL) == []


def test_incomplete_delivery_state_still_returns_id(client, fake_session, screenshot) -> None:
    fake_session.add("POST", RESERVE_URL, _reservation(_operation(PART_ONE_URL, 0, 100)))
    fake_session.add("PUT", PART_ONE_URL, status=200)
    fake_session.add("PATCH", COMMIT_URL, _committed("AWAITING_UPLOAD"))

    result = ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert result.screenshot_id == "shot-1"
    assert result.delivery_state == "AWAITING_UPLOAD"
    assert result.complete is False


def test_plain_string_delivery_state_is_accepted(client, fake_session, screenshot) -> None:
    fake_session.add("POST", RESERVE_URL, _reservation(_operation(PART_ONE_URL, 0)))
    fake_session.add("PUT", PART_ONE_URL, status=200)
    fake_session.add(
        "PATCH",
        COMMIT_URL,
        {"data": {"id": "shot-1", "attributes": {"assetDeliveryState": "UPLOAD_COMPLETE"}}},
    )

    result = ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert result.complete is True


def test_reservation_without_id_is_an_error(client, fake_session, screenshot) -> None:
    fake_session.add("POST", RESERVE_URL, {"data": {"attributes": {}}})

    with pytest.raises(RuntimeError):
        ReviewScreenshotUploader(client).upload("6450000001", screenshot)

    assert fake_session.calls_to("PATCH", COMMIT_URL) == []


def test_read_file_chunk_reads_range_or_to_end(screenshot) -> None:
    assert read_file_chunk(screenshot, 10, 5) == FILE_BYTES[10:15]
    assert read_file_chunk(screenshot, 90, None) == FILE_BYTES[90:]
    assert read_file_chunk(screenshot, None, None) == FILE_BYTES
