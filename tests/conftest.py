"""Shared fixtures: signing keys, token minting and a fake key endpoint."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

from cloudflare_gate.access.keys import KeyCache, certs_url

TEAM = "myteam"
ISSUER = "https://myteam.cloudflareaccess.com"
CERTS_URL = certs_url(TEAM)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SigningKey:
    """A private key plus its public JWK form."""

    def __init__(self, kid: str, alg: str = "RS256") -> None:
        self.kid = kid
        self.alg = alg
        if alg == "ES256":
            self.private = ec.generate_private_key(ec.SECP256R1())
            jwk = ECAlgorithm.to_jwk(self.private.public_key(), as_dict=True)
        else:
            self.private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            jwk = RSAAlgorithm.to_jwk(self.private.public_key(), as_dict=True)
        jwk.pop("key_ops", None)
        jwk.update({"kid": kid, "alg": alg, "use": "sig"})
        self.jwk: Dict[str, Any] = jwk

    def sign(self, claims: Dict[str, Any], headers: Optional[Dict[str, Any]] = None) -> str:
        hdrs = {"kid": self.kid}
        hdrs.update(headers or {})
        return jwt.encode(claims, self.private, algorithm=self.alg, headers=hdrs)


class FakeKeyEndpoint:
    """Serves a mutable JWKS document through ``httpx.MockTransport``."""

    def __init__(self, keys: List[SigningKey]) -> None:
        self.keys = list(keys)
        self.calls = 0
        self.status = 200
        self.body: Optional[str] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        assert str(request.url) == CERTS_URL
        if self.body is not None:
            return httpx.Response(self.status, text=self.body)
        doc = {"keys": [k.jwk for k in self.keys]}
        return httpx.Response(self.status, text=json.dumps(doc))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_claims(**overrides: Any) -> Dict[str, Any]:
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": ISSUER,
        "aud": ["aud-x"],
        "email": "alice@example.com",
        "sub": "7335d417-61da-459d-899c-0a01c76a2f94",
        "iat": now,
        "exp": now + 3600,
        "type": "app",
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


@pytest.fixture(scope="session")
def rsa_key() -> SigningKey:
    return SigningKey("rsa-1")


@pytest.fixture(scope="session")
def rsa_key_2() -> SigningKey:
    return SigningKey("rsa-2")


@pytest.fixture(scope="session")
def ec_key() -> SigningKey:
    return SigningKey("ec-1", alg="ES256")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def endpoint(rsa_key: SigningKey, ec_key: SigningKey) -> FakeKeyEndpoint:
    return FakeKeyEndpoint([rsa_key, ec_key])


@pytest.fixture()
def make_cache(endpoint: FakeKeyEndpoint, clock: FakeClock) -> Callable[..., KeyCache]:
    def _make(**kwargs: Any) -> KeyCache:
        kwargs.setdefault("clock", clock)
        return KeyCache(CERTS_URL, client=endpoint.client(), **kwargs)

    return _make
