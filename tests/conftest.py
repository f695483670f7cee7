from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from apple_auth import Credentials
from apple_store import AppStoreConnectClient

API_BASE = "https://api.example.test"
KEY_ID = "ABC123DEFG"
ISSUER_ID = "57246542-96fe-1a63-e053-0824d011072a"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """Stand-in for ``requests.Session`` keyed by method and full URL.

    Responses registered for the same route are served in order; the last one
    keeps being served once the others are used up.
    """

    def __init__(self) -> None:
        self.calls: List[SimpleNamespace] = []
        self._routes: Dict[Tuple[str, str], List[Any]] = {}

    def add(
        self,
        method: str,
        url: str,
        payload: Any = None,
        *,
        status: int = 200,
        text: Optional[str] = None,
    ) -> None:
        response = FakeResponse(status, payload, text)
        self._routes.setdefault((method.upper(), url), []).append(response)

    def add_error(self, method: str, url: str, exc: Exception) -> None:
        self._routes.setdefault((method.upper(), url), []).append(exc)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        call = SimpleNamespace(
            method=method.upper(),
            url=url,
            headers=kwargs.get("headers") or {},
            params=kwargs.get("params"),
            json=kwargs.get("json"),
            data=kwargs.get("data"),
            timeout=kwargs.get("timeout"),
        )
        self.calls.append(call)
        queue = self._routes.get((call.method, url))
        if not queue:
            raise AssertionError(f"unexpected request {call.method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, method: str, url: str) -> List[SimpleNamespace]:
        return [call for call in self.calls if call.method == method.upper() and call.url == url]


@pytest.fixture(scope="session")
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def private_key_pem(ec_private_key: ec.EllipticCurvePrivateKey) -> str:
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def credentials(ec_private_key: ec.EllipticCurvePrivateKey) -> Credentials:
    return Credentials(key_id=KEY_ID, issuer_id=ISSUER_ID, private_key=ec_private_key)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(credentials: Credentials, fake_session: FakeSession) -> AppStoreConnectClient:
    return AppStoreConnectClient(credentials, base_url=API_BASE, timeout=5, session=fake_session)
