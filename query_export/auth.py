from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import requests

from .config import Settings
from .exceptions import AuthError
from .http_client import HttpClient
from .logging_utils import get_logger, log_json
from .models import Credential, ValidationEntry

Clock = Callable[[], float]

# Validation results are keyed by a token prefix, never the full secret.
CACHE_KEY_CHARS = 50


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class ValidationPolicy:
    """Single place that decides whether a token may be used.

    A probe against the identity endpoint is cheap but not free, so results
    (positive and negative) are trusted for ``ttl_sec`` before re-checking.
    """

    def __init__(self, http: HttpClient, validate_url: str, ttl_sec: float = 300.0, clock: Clock = time.time):
        self.http = http
        self.validate_url = validate_url
        self.ttl_sec = ttl_sec
        self.clock = clock
        self.logger = get_logger(__name__)
        self._entries: Dict[str, ValidationEntry] = {}

    def is_valid(self, token: str) -> bool:
        key = token[:CACHE_KEY_CHARS]
        now = self.clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry.checked_at < self.ttl_sec:
            self.logger.debug("Using cached validation result valid=%s", entry.valid)
            return entry.valid

        valid = self.validate(token)
        self._entries[key] = ValidationEntry(valid=valid, checked_at=now)
        return valid

    def record(self, token: str, valid: bool) -> None:
        self._entries[token[:CACHE_KEY_CHARS]] = ValidationEntry(valid=valid, checked_at=self.clock())

    def validate(self, token: str) -> bool:
        """Probe the identity endpoint; any 2xx means the token is accepted."""
        try:
            resp = self.http.request(
                "GET",
                self.validate_url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except requests.RequestException as e:
            log_json(self.logger, logging.ERROR, "token_validation_error", error=str(e))
            return False

        if resp.ok:
            return True

        log_json(
            self.logger,
            logging.WARNING,
            "token_validation_failed",
            status=resp.status_code,
            body=(resp.text or "")[:200],
        )
        return False

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CredentialSource(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    def renewable(self) -> bool:
        return True

    @abstractmethod
    def obtain(self, now: float) -> Credential:
        """Return a fresh credential. Raises AuthError on failure."""
        ...


class ClientCredentialsSource(CredentialSource):
    @property
    def name(self) -> str:
        return "client_credentials"

    def __init__(
        self,
        http: HttpClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        grant_type: str = "client_credentials",
        lifetime_sec: float = 2 * 60 * 60,
    ):
        self.http = http
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.grant_type = grant_type
        self.lifetime_sec = lifetime_sec
        self.logger = get_logger(__name__)

    def obtain(self, now: float) -> Credential:
        form = {
            "grant_type": self.grant_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            resp = self.http.request(
                "POST",
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            )
        except requests.RequestException as e:
            raise AuthError(f"OAuth token request failed: {e}") from e

        if not resp.ok:
            log_json(
                self.logger,
                logging.ERROR,
                "token_exchange_failed",
                status=resp.status_code,
                body=(resp.text or "")[:500],
                url=self.token_url,
            )
            raise AuthError(f"OAuth token request failed {resp.status_code}: {resp.text}")

        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError("OAuth token response is not JSON") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("OAuth token response has no access_token")

        # Lifetime is the documented session length, not anything the response claims.
        cred = Credential(
            token=token,
            issued_at=now,
            expires_at=now + self.lifetime_sec,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
            instance_url=data.get("instance_url"),
        )
        log_json(
            self.logger,
            logging.INFO,
            "token_exchanged",
            token_type=cred.token_type,
            scope=cred.scope,
            instance_url=cred.instance_url,
            issued_at=data.get("issued_at"),
            token_length=len(token),
            expires_at=_iso(cred.expires_at),
        )
        return cred


class StaticTokenSource(CredentialSource):
    @property
    def name(self) -> str:
        return "static_token"

    @property
    def renewable(self) -> bool:
        return False

    def __init__(self, token: str, lifetime_sec: float = 2 * 60 * 60):
        self.token = token
        self.lifetime_sec = lifetime_sec

    def obtain(self, now: float) -> Credential:
        return Credential(token=self.token, issued_at=now, expires_at=now + self.lifetime_sec, static=True)


class TokenCache:
    """Holds the current credential and hands out only validated ones.

    ``acquire`` is serialized so concurrent callers share one refresh.
    """

    def __init__(self, source: Optional[CredentialSource], policy: ValidationPolicy, clock: Clock = time.time):
        self.source = source
        self.policy = policy
        self.clock = clock
        self.logger = get_logger(__name__)
        self._credential: Optional[Credential] = None
        self._lock = threading.Lock()

    def acquire(self) -> Credential:
        with self._lock:
            return self._acquire_locked()

    def _acquire_locked(self) -> Credential:
        if self.source is None:
            raise AuthError("No credential source configured (set SF_ACCESS_TOKEN or USE_OAUTH with client credentials)")

        now = self.clock()
        cred = self._credential
        if cred is not None and not cred.is_expired(now):
            if self.policy.is_valid(cred.token):
                log_json(
                    self.logger,
                    logging.DEBUG,
                    "token_cached",
                    token_length=len(cred.token),
                    expires_in_min=round((cred.expires_at - now) / 60),
                )
                return cred
            if not self.source.renewable:
                self.invalidate()
                raise AuthError("Configured access token was rejected by the identity endpoint")
            log_json(self.logger, logging.WARNING, "token_refresh", reason="validation_failed")
        elif cred is not None:
            log_json(
                self.logger,
                logging.WARNING,
                "token_refresh",
                reason="expired",
                expired_at=_iso(cred.expires_at),
                seconds_since_expiry=round(now - cred.expires_at),
            )

        self.invalidate()
        fresh = self.source.obtain(now)

        if self.source.renewable:
            self.policy.record(fresh.token, True)
        elif not self.policy.is_valid(fresh.token):
            raise AuthError("Configured access token was rejected by the identity endpoint")

        self._credential = fresh
        return fresh

    def cached(self) -> Optional[Credential]:
        return self._credential

    def is_expired(self) -> bool:
        cred = self._credential
        return cred is None or cred.is_expired(self.clock())

    def seconds_until_expiry(self) -> float:
        cred = self._credential
        if cred is None:
            return 0.0
        return max(cred.expires_at - self.clock(), 0.0)

    def invalidate(self) -> None:
        self._credential = None
        self.policy.clear()


def build_credential_source(settings: Settings, http: HttpClient) -> Optional[CredentialSource]:
    base = settings.instance_url.rstrip("/")
    if settings.use_oauth and settings.client_id and settings.client_secret:
        return ClientCredentialsSource(
            http,
            token_url=f"{base}/services/oauth2/token",
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            grant_type=settings.grant_type,
            lifetime_sec=settings.token_lifetime_sec,
        )
    if settings.access_token:
        return StaticTokenSource(settings.access_token, lifetime_sec=settings.token_lifetime_sec)
    return None


def build_token_cache(settings: Settings, http: HttpClient, clock: Clock = time.time) -> TokenCache:
    policy = ValidationPolicy(
        http,
        validate_url=f"{settings.instance_url.rstrip('/')}/services/oauth2/userinfo",
        ttl_sec=settings.token_validation_ttl_sec,
        clock=clock,
    )
    return TokenCache(build_credential_source(settings, http), policy, clock=clock)
