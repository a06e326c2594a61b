import sys
import threading
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from capcs.auth import AuthError, ImpersonationClient, TokenCache, UMA_GRANT_TYPE
from fakes import FakeClock, FakeResponse


class TokenEndpoint:
    """Session double for the OAuth token endpoint and the impersonate call."""

    def __init__(self, expires_in=900):
        self.expires_in = expires_in
        self.impersonate_status = 200
        self.posts = []
        self.lock = threading.Lock()

    def post(self, url, data=None, json=None, headers=None, timeout=None):
        with self.lock:
            self.posts.append({"url": url, "data": data, "json": json, "headers": headers})
        body = {"access_token": "", "expires_in": self.expires_in}
        if url.endswith("/token"):
            body["access_token"] = "sa-token" if data["grant_type"] == "client_credentials" else "rpt-token"
            return FakeResponse(200, body)
        if self.impersonate_status != 200:
            return FakeResponse(self.impersonate_status, text="forbidden")
        body["access_token"] = f"user-token-{json['user_email']}"
        return FakeResponse(200, body)

    def impersonations(self):
        return [p for p in self.posts if "impersonate" in p["url"]]


@pytest.fixture
def endpoint():
    return TokenEndpoint()


@pytest.fixture
def auth_clock():
    return FakeClock(now=10_000.0)


@pytest.fixture
def impersonation(endpoint, auth_clock):
    return ImpersonationClient(
        "https://auth.test",
        "capcs",
        "s3cret",
        session=endpoint,
        clock=auth_clock,
    )


def test_exchange_runs_all_three_steps(impersonation, endpoint):
    token = impersonation.get_token("alice@example.com", "zrh")

    assert token == "user-token-alice@example.com"
    assert len(endpoint.posts) == 3
    sa, rpt, imp = endpoint.posts
    assert sa["url"] == "https://auth.test/realms/cloudsigma/protocol/openid-connect/token"
    assert sa["data"]["grant_type"] == "client_credentials"
    assert rpt["data"]["grant_type"] == UMA_GRANT_TYPE
    assert rpt["headers"]["Authorization"] == "Bearer sa-token"
    assert imp["url"] == "https://direct.zrh.cloudsigma.com/service_provider/api/v1/user/impersonate"
    assert imp["json"] == {"user_email": "alice@example.com", "subject_token": "sa-token"}
    assert imp["headers"]["Authorization"] == "Bearer rpt-token"


def test_tokens_are_cached_per_user_and_region(impersonation, endpoint):
    impersonation.get_token("alice@example.com", "zrh")
    impersonation.get_token("alice@example.com", "zrh")
    assert len(endpoint.posts) == 3

    impersonation.get_token("bob@example.com", "zrh")
    impersonation.get_token("alice@example.com", "sjc")
    assert len(endpoint.impersonations()) == 3
    assert len(endpoint.posts) == 5


def test_tokens_refresh_inside_expiry_buffer(impersonation, endpoint, auth_clock):
    impersonation.get_token("alice@example.com", "zrh")

    auth_clock.now += 599
    impersonation.get_token("alice@example.com", "zrh")
    assert len(endpoint.posts) == 3

    auth_clock.now += 2
    impersonation.get_token("alice@example.com", "zrh")
    assert len(endpoint.posts) == 6


def test_clear_user_token_only_refreshes_that_user(impersonation, endpoint):
    impersonation.get_token("alice@example.com", "zrh")
    impersonation.get_token("bob@example.com", "zrh")

    impersonation.clear_user_token("alice@example.com", "zrh")
    impersonation.get_token("alice@example.com", "zrh")
    impersonation.get_token("bob@example.com", "zrh")

    assert [p["json"]["user_email"] for p in endpoint.impersonations()] == [
        "alice@example.com",
        "bob@example.com",
        "alice@example.com",
    ]


def test_failed_impersonation_raises(impersonation, endpoint):
    endpoint.impersonate_status = 403

    with pytest.raises(AuthError) as exc:
        impersonation.get_token("mallory@example.com", "zrh")

    assert exc.value.status_code == 403
    assert len(impersonation.cache) == 2


def test_missing_expiry_defaults_to_fifteen_minutes(auth_clock):
    endpoint = TokenEndpoint(expires_in=None)
    client = ImpersonationClient("https://auth.test", "capcs", "s3cret", session=endpoint, clock=auth_clock)

    _, expires_at = client.fetch_token("alice@example.com", "zrh")

    assert expires_at == auth_clock.now + 15 * 60


def test_concurrent_misses_fetch_once(impersonation, endpoint):
    results = []
    threads = [
        threading.Thread(target=lambda: results.append(impersonation.get_token("alice@example.com", "zrh")))
        for _ in range(10)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert set(results) == {"user-token-alice@example.com"}
    assert len(endpoint.impersonations()) == 1


def test_token_cache_drops_expired_entries(auth_clock):
    cache = TokenCache(clock=auth_clock, expiry_buffer_s=60)
    cache.put("k", "v", auth_clock.now + 100)

    assert cache.get("k") == "v"
    auth_clock.now += 41
    assert cache.get("k") is None
    assert len(cache) == 0


def test_incomplete_credentials_are_rejected():
    with pytest.raises(ValueError):
        ImpersonationClient("https://auth.test", "", "s3cret")
