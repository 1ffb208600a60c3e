"""
Pytest configuration and fixtures for SSO service tests.

Provides fixtures for:
- Database engine and session factory (SQLite via aiosqlite)
- A fake OIDC identity provider served through httpx.MockTransport,
  signing real RS256 ID tokens
- OIDC components wired the way the application wires them
- Test HTTP client
"""

import json
import secrets
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Optional
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from httpx import ASGITransport, AsyncClient
from jose import jwk, jwt
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from sso_service.config.settings import Settings
from sso_service.core.oidc.client import HttpOIDCClient
from sso_service.core.oidc.pkce import generate_code_challenge
from sso_service.core.oidc.registry import ProviderConfig, ProviderRegistry
from sso_service.core.oidc.resolver import IdentityResolver
from sso_service.core.oidc.service import OIDCService
from sso_service.core.oidc.state import InMemoryStateStore
from sso_service.infrastructure.auth.token_issuer import TokenIssuer
from sso_service.infrastructure.db.database import Database
from sso_service.infrastructure.db.models import Base, User

ISSUER = "http://dex.test/dex"
CLIENT_ID = "pulse"
CLIENT_SECRET = "dex-client-secret"
BASE_URL = "http://sso.test"
FRONTEND_URL = "http://app.test"


@dataclass
class SigningKey:
    """RSA key pair used by the fake identity provider"""
    kid: str
    private_pem: bytes
    public_jwk: dict


def make_signing_key(kid: str) -> SigningKey:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return SigningKey(kid=kid, private_pem=private_pem, public_jwk=public_jwk)


def make_ec_signing_key(kid: str) -> SigningKey:
    """P-256 key as published next to RSA keys by Keycloak and similar providers"""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, "ES256").to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": "ES256"})
    return SigningKey(kid=kid, private_pem=private_pem, public_jwk=public_jwk)


class FakeIdP:
    """Minimal OIDC provider: discovery, JWKS and token endpoints.

    Authorization codes are minted directly with issue_code() in place of the
    browser round trip to the authorization endpoint.
    """

    def __init__(self, issuer: str, signing_key: SigningKey):
        self.issuer = issuer
        self.client_id = CLIENT_ID
        self.client_secret = CLIENT_SECRET
        self.signing_key = signing_key
        self.published_keys = [signing_key]
        self.codes: dict[str, dict] = {}
        self.discovery_calls = 0
        self.jwks_calls = 0
        self.token_requests: list[dict] = []
        self.requested_urls: list[str] = []
        # Overrides for failure scenarios
        self.token_status = 200
        self.token_success_status = 200
        self.token_body: Optional[bytes] = None
        self.token_error: Optional[Exception] = None

    def discovery_document(self) -> dict:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/auth",
            "token_endpoint": f"{self.issuer}/token",
            "jwks_uri": f"{self.issuer}/keys",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "id_token_signing_alg_values_supported": ["RS256"],
        }

    def rotate_key(self, new_key: SigningKey) -> None:
        """Publish and sign with a new key"""
        self.signing_key = new_key
        self.published_keys = [new_key]

    def id_token(
        self,
        nonce: Optional[str],
        subject: str = "dex-user-1",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        expires_in: int = 300,
        key: Optional[SigningKey] = None,
        **claims,
    ) -> str:
        key = key or self.signing_key
        now = int(time.time())
        payload = {
            "iss": issuer or self.issuer,
            "sub": subject,
            "aud": audience or self.client_id,
            "iat": now,
            "exp": now + expires_in,
        }
        if nonce is not None:
            payload["nonce"] = nonce
        payload.update(claims)
        return jwt.encode(payload, key.private_pem, algorithm="RS256", headers={"kid": key.kid})

    def issue_code(self, code_challenge: str, nonce: str, **claims) -> str:
        """Mint an authorization code the token endpoint will redeem"""
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"code_challenge": code_challenge, "nonce": nonce, "claims": claims}
        return code

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).split("?")[0]
        self.requested_urls.append(url)

        if request.method == "GET" and url.endswith("/.well-known/openid-configuration"):
            self.discovery_calls += 1
            return httpx.Response(200, json=self.discovery_document())

        if request.method == "GET" and url.endswith("/keys"):
            self.jwks_calls += 1
            return httpx.Response(200, json={"keys": [k.public_jwk for k in self.published_keys]})

        if request.method == "POST" and url.endswith("/token"):
            return self._token(request)

        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_error is not None:
            raise self.token_error

        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)

        if self.token_status != 200 or self.token_body is not None:
            return httpx.Response(self.token_status, content=self.token_body or b'{"error": "server_error"}')

        if form.get("client_id") != self.client_id or form.get("client_secret") != self.client_secret:
            return httpx.Response(401, json={"error": "invalid_client"})

        grant = self.codes.pop(form.get("code", ""), None)
        if form.get("grant_type") != "authorization_code" or grant is None:
            return httpx.Response(400, json={"error": "invalid_grant"})

        if generate_code_challenge(form.get("code_verifier", "")) != grant["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE failed"})

        return httpx.Response(
            self.token_success_status,
            json={
                "access_token": secrets.token_urlsafe(16),
                "token_type": "Bearer",
                "expires_in": 3600,
                "id_token": self.id_token(nonce=grant["nonce"], **grant["claims"]),
            },
        )


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    """Identity provider signing key (generated once per session)"""
    return make_signing_key("key-1")


@pytest.fixture(scope="session")
def rotated_signing_key() -> SigningKey:
    """Second signing key for rotation and forgery scenarios"""
    return make_signing_key("key-2")


@pytest.fixture(scope="session")
def ec_signing_key() -> SigningKey:
    """EC key for mixed RSA/EC key sets"""
    return make_ec_signing_key("ec-1")


@pytest.fixture
def idp(signing_key) -> FakeIdP:
    return FakeIdP(ISSUER, signing_key)


@pytest.fixture
def dex_provider() -> ProviderConfig:
    return ProviderConfig(
        slug="dex",
        name="Dex",
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
    )


@pytest.fixture
def disabled_provider() -> ProviderConfig:
    return ProviderConfig(
        slug="okta",
        name="Okta",
        issuer_url="http://okta.test",
        client_id="pulse-okta",
        client_secret="okta-secret",
        enabled=False,
    )


@pytest.fixture
def registry(dex_provider, disabled_provider) -> ProviderRegistry:
    return ProviderRegistry([dex_provider, disabled_provider])


@pytest.fixture
def oidc_client(idp) -> HttpOIDCClient:
    """OIDC client talking to the fake identity provider"""
    return HttpOIDCClient(timeout_seconds=5.0, transport=httpx.MockTransport(idp.handler))


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create test database engine."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test_db.sqlite'}", poolclass=NullPool, echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database(test_engine) -> Database:
    return Database.from_engine(test_engine)


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
def create_user(session_factory):
    """Factory for local users that exist before any federated login"""

    async def _create(
        username: str = "alice",
        email: Optional[str] = "alice@example.com",
        password_hash: Optional[str] = None,
        **fields,
    ) -> User:
        async with session_factory() as session:
            async with session.begin():
                user = User(username=username, email=email, password_hash=password_hash, **fields)
                session.add(user)
        return user

    return _create


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore(ttl_minutes=10)


@pytest.fixture
def resolver(session_factory) -> IdentityResolver:
    return IdentityResolver(session_factory)


@pytest.fixture
def token_issuer(session_factory) -> TokenIssuer:
    return TokenIssuer(session_factory, secret_key="test-secret-key", issuer="pulse")


@pytest.fixture
def test_settings(dex_provider, disabled_provider) -> Settings:
    providers = [
        dex_provider.model_dump(),
        disabled_provider.model_dump(),
    ]
    return Settings(
        environment="development",
        base_url=BASE_URL,
        frontend_url=FRONTEND_URL,
        oidc_providers=json.dumps(providers),
        jwt_secret_key="test-secret-key",
        sentry_dsn=None,
    )


@pytest.fixture
def oidc_service(registry, oidc_client, state_store, resolver) -> OIDCService:
    return OIDCService(
        registry=registry,
        client=oidc_client,
        state_store=state_store,
        resolver=resolver,
        base_url=BASE_URL,
        frontend_url=FRONTEND_URL,
    )


@pytest.fixture
def app(test_settings, database, oidc_service, token_issuer):
    """Application with OIDC components wired in place of the lifespan"""
    from sso_service.main import create_app

    application = create_app(test_settings)
    application.state.database = database
    application.state.oidc_service = oidc_service
    application.state.token_issuer = token_issuer
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client (redirects are not followed)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=BASE_URL) as ac:
        yield ac
