"""Create a batch of consumable App Store in-app purchases from ``iap_config.json``."""

import logging
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, TextIO

from dotenv import load_dotenv

from apple_auth import AppleStoreConfigError, load_credentials
from apple_store import AppStoreConnectClient
from batch_create import BatchOrchestrator, BatchResult
from iap_config import load_api_settings, load_batch_config, resolve_config_path
from review_screenshot import ReviewScreenshotUploader

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class DailyLogFileHandler(logging.Handler):
    def __init__(self, directory: Path, encoding: str = "utf-8"):
        super().__init__()
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.encoding = encoding
        self._current_date: Optional[date] = None
        self._stream: Optional[Any] = None
        self._lock = threading.Lock()

    def _log_path_for(self, date_obj: date) -> Path:
        return self.directory / f"create_iap_{date_obj.strftime('%Y-%m-%d')}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            today = datetime.now().date()
            with self._lock:
                if today != self._current_date:
                    self._current_date = today
                    if self._stream:
                        self._stream.close()
                    self._stream = open(self._log_path_for(today), "a", encoding=self.encoding)
                if self._stream:
                    self._stream.write(msg + "\n")
                    self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            with self._lock:
                if self._stream:
                    self._stream.close()
                    self._stream = None
        finally:
            super().close()


def configure_logging(level_name: str = "INFO", log_dir: Optional[str] = None) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root_logger.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_dir:
        file_handler = DailyLogFileHandler(Path(log_dir))
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def print_summary(result: BatchResult, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    print(file=stream)
    print("인앱 상품 생성 작업이 끝났습니다.", file=stream)
    print(f"성공: {result.success_count}개", file=stream)
    print(f"실패: {result.failed_count}개", file=stream)

    for item in result:
        if item.succeeded:
            print(f"  - ${item.price}: {item.product_id} (ID: {item.iap_id})", file=stream)
            if item.price_point_id:
                print(f"    가격 포인트 ID: {item.price_point_id}", file=stream)
            print(f"    스크린샷 ID: {item.screenshot_id}", file=stream)
            if item.degraded:
                print(f"    경고: 전체 판매 지역 설정 실패 - {item.availability_error}", file=stream)
        else:
            print(f"  - ${item.price}: 실패 - {item.error}", file=stream)

    print(file=stream)
    print("최종 심사 제출은 App Store Connect에서 직접 진행해 주세요.", file=stream)


def main() -> int:
    load_dotenv()

    try:
        settings = load_api_settings()
    except AppleStoreConfigError as exc:
        print(f"환경 구성이 올바르지 않습니다: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level, settings.log_dir)

    print("App Store Connect API - 인앱 상품 일괄 생성 도구")
    print()

    try:
        config = load_batch_config(resolve_config_path())
        credentials = load_credentials(config.key_id, config.issuer_id, config.private_key_path)
    except AppleStoreConfigError as exc:
        print(f"환경 구성이 올바르지 않습니다: {exc}", file=sys.stderr)
        return 1

    client = AppStoreConnectClient(credentials, base_url=settings.base_url, timeout=settings.timeout)
    orchestrator = BatchOrchestrator(
        client,
        ReviewScreenshotUploader(client),
        product_id_prefix=config.product_id_prefix,
        screenshot_path=config.screenshot_path,
    )

    print("인앱 상품 일괄 생성을 시작합니다.")
    print("가격 목록: " + ", ".join(f"${price}" for price in config.prices))

    try:
        result = orchestrator.run(config.app_id, config.prices)
    except Exception as exc:  # pragma: no cover - runtime safeguard
        logger.exception("Batch creation aborted")
        print(f"작업 실패: {exc}", file=sys.stderr)
        return 1

    print_summary(result)
    return 0


if __name__ == "__main__":  # pragma: no mutate - CLI entry point
    raise SystemExit(main())
