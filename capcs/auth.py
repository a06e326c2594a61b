"""Impersonation token exchange and token caching."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

UMA_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:uma-ticket"
SERVICE_PROVIDER_AUDIENCE = "service_provider_api"
DEFAULT_TOKEN_LIFETIME_S = 15 * 60
DEFAULT_EXPIRY_BUFFER_S = 5 * 60

_SERVICE_ACCOUNT_KEY = "__service_account__"
_RPT_KEY = "__rpt__"


class AuthError(Exception):
    """Token exchange failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class CachedToken:
    token: str
    expires_at: float

    def is_expired(self, now: float, buffer_s: float) -> bool:
        return now + buffer_s >= self.expires_at


def cache_key(user: str, region: str) -> str:
    return f"{user}:{region}"


class TokenCache:
    """
    Thread-safe token cache keyed by identity and region.

    Args:
        clock: Returns the current wall-clock time in seconds
        expiry_buffer_s: Tokens are treated as expired this long before they actually expire
    """

    def __init__(self, clock: Callable[[], float] = time.time, expiry_buffer_s: float = DEFAULT_EXPIRY_BUFFER_S):
        self._clock = clock
        self.expiry_buffer_s = expiry_buffer_s
        self._tokens: Dict[str, CachedToken] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            cached = self._tokens.get(key)
            if cached is None:
                return None
            if cached.is_expired(self._clock(), self.expiry_buffer_s):
                del self._tokens[key]
                return None
            return cached.token

    def put(self, key: str, token: str, expires_at: float) -> None:
        with self._lock:
            self._tokens[key] = CachedToken(token=token, expires_at=expires_at)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def clear_one(self, user: str, region: str) -> None:
        with self._lock:
            self._tokens.pop(cache_key(user, region), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class ImpersonationClient:
    """
    Obtains user-scoped API tokens for a service provider account.

    The exchange runs in three steps: a client-credentials grant for the
    service account, a UMA ticket grant for a requesting party token, and the
    impersonate call that returns a token acting as the end user. All three
    tokens are cached.
    """

    def __init__(
        self,
        oauth_url: str,
        client_id: str,
        client_secret: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        cache: Optional[TokenCache] = None,
        clock: Callable[[], float] = time.time,
        impersonate_url: str = "https://direct.{region}.cloudsigma.com/service_provider/api/v1/user/impersonate",
    ):
        if not oauth_url or not client_id or not client_secret:
            raise ValueError("oauth_url, client_id and client_secret are required")
        self.oauth_url = oauth_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self.cache = cache or TokenCache(clock=clock)
        self.impersonate_url = impersonate_url
        # Serialises fetches so concurrent misses do not stampede the token endpoint.
        self._fetch_lock = threading.Lock()

    @property
    def token_url(self) -> str:
        return f"{self.oauth_url}/realms/cloudsigma/protocol/openid-connect/token"

    def get_token(self, user: str, region: str) -> str:
        """Return a cached or freshly exchanged token for ``user`` in ``region``."""
        key = cache_key(user, region)
        token = self.cache.get(key)
        if token:
            return token
        with self._fetch_lock:
            token = self.cache.get(key)
            if token:
                return token
            token, expires_at = self.fetch_token(user, region)
            self.cache.put(key, token, expires_at)
            return token

    def fetch_token(self, user: str, region: str) -> Tuple[str, float]:
        logger.info(f"Fetching impersonated token for {user} in {region}")
        sa_token = self._service_account_token()
        rpt = self._rpt_token(sa_token)
        return self._impersonate(rpt, sa_token, user, region)

    def clear_cache(self) -> None:
        self.cache.clear()

    def clear_user_token(self, user: str, region: str) -> None:
        self.cache.clear_one(user, region)

    def _service_account_token(self) -> str:
        cached = self.cache.get(_SERVICE_ACCOUNT_KEY)
        if cached:
            return cached
        data = self._post_form(
            {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            what="service account token",
        )
        token = data["access_token"]
        self.cache.put(_SERVICE_ACCOUNT_KEY, token, self._expiry(data.get("expires_in")))
        return token

    def _rpt_token(self, access_token: str) -> str:
        cached = self.cache.get(_RPT_KEY)
        if cached:
            return cached
        data = self._post_form(
            {"grant_type": UMA_GRANT_TYPE, "audience": SERVICE_PROVIDER_AUDIENCE},
            what="RPT token",
            bearer=access_token,
        )
        token = data["access_token"]
        self.cache.put(_RPT_KEY, token, self._expiry(data.get("expires_in")))
        return token

    def _impersonate(self, rpt: str, subject_token: str, user: str, region: str) -> Tuple[str, float]:
        url = self.impersonate_url.format(region=region)
        try:
            resp = self.session.post(
                url,
                json={"user_email": user, "subject_token": subject_token},
                headers={"Authorization": f"Bearer {rpt}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"impersonation request failed: {e}") from e
        if resp.status_code != 200:
            raise AuthError(
                f"impersonation of {user} failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        data = resp.json()
        token = data.get("access_token")
        if not token:
            raise AuthError("impersonation response missing access_token")
        return token, self._expiry(data.get("expires_in"))

    def _post_form(self, form: Dict[str, str], what: str, bearer: Optional[str] = None) -> Dict:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        try:
            resp = self.session.post(self.token_url, data=form, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise AuthError(f"{what} request failed: {e}") from e
        if resp.status_code != 200:
            raise AuthError(f"{what} request failed with status {resp.status_code}: {resp.text}", status_code=resp.status_code)
        data = resp.json()
        if not data.get("access_token"):
            raise AuthError(f"{what} response missing access_token")
        return data

    def _expiry(self, expires_in) -> float:
        try:
            seconds = int(expires_in or 0)
        except (TypeError, ValueError):
            seconds = 0
        if seconds <= 0:
            seconds = DEFAULT_TOKEN_LIFETIME_S
        return self._clock() + seconds
