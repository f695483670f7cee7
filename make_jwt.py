"""Utility script to generate an App Store Connect JWT."""

from __future__ import annotations

import argparse
import sys

from dotenv import load_dotenv

from apple_auth import AppleStoreConfigError, load_credentials, sign_token
from iap_config import load_batch_config, resolve_config_path


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Generate a JWT for the App Store Connect API from the batch configuration file."
    )
    parser.add_argument(
        "--config",
        default=resolve_config_path(),
        help="Path to the JSON configuration holding key_id and issuer_id (default: %(default)s).",
    )
    args = parser.parse_args(argv)

    try:
        config = load_batch_config(args.config)
        credentials = load_credentials(config.key_id, config.issuer_id, config.private_key_path)
        token = sign_token(credentials)
    except AppleStoreConfigError as exc:
        print(f"환경 구성이 올바르지 않습니다: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # pragma: no cover - runtime safeguard
        print(f"JWT 생성 중 예기치 못한 오류가 발생했습니다: {exc}", file=sys.stderr)
        return 1

    print(token.value)
    return 0


if __name__ == "__main__":  # pragma: no mutate - CLI entry point
    raise SystemExit(main())
