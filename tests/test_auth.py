import threading
import unittest

import requests

from query_export.auth import (
    ClientCredentialsSource,
    StaticTokenSource,
    TokenCache,
    ValidationPolicy,
    build_credential_source,
)
from query_export.config import Settings
from query_export.exceptions import AuthError

from tests.fakes import FakeClock, FakeHttp, FakeResponse

INSTANCE = "https://example.my.salesforce.com"
TOKEN_URL = f"{INSTANCE}/services/oauth2/token"
USERINFO_URL = f"{INSTANCE}/services/oauth2/userinfo"


class IdentityServer:
    """Fake identity endpoints; issues tok-1, tok-2, ... and validates per ``valid``."""

    def __init__(self):
        self.issued = 0
        self.valid = True
        self.token_status = 200

    def __call__(self, method, url, **kw):
        if url == TOKEN_URL:
            if self.token_status != 200:
                return FakeResponse(self.token_status, text='{"error":"invalid_client"}')
            self.issued += 1
            return FakeResponse(
                200,
                {
                    "access_token": f"tok-{self.issued}",
                    "token_type": "Bearer",
                    "scope": "cdp_query_api",
                    "instance_url": INSTANCE,
                    "issued_at": "1700000000000",
                    "expires_in": 60,
                },
            )
        if url == USERINFO_URL:
            return FakeResponse(200 if self.valid else 401, {"sub": "x"} if self.valid else None, text="" if self.valid else "Bad_OAuth_Token")
        raise AssertionError(f"unexpected url {url}")


def _oauth_cache(server, clock):
    http = FakeHttp(server)
    source = ClientCredentialsSource(http, TOKEN_URL, "cid", "secret")
    policy = ValidationPolicy(http, USERINFO_URL, ttl_sec=300, clock=clock)
    return TokenCache(source, policy, clock=clock), http


class TestTokenCacheExchange(unittest.TestCase):
    def setUp(self):
        self.server = IdentityServer()
        self.clock = FakeClock()
        self.cache, self.http = _oauth_cache(self.server, self.clock)

    def test_first_acquire_exchanges_with_form_body(self):
        cred = self.cache.acquire()

        self.assertEqual(cred.token, "tok-1")
        calls = self.http.calls_to("/oauth2/token")
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["method"], "POST")
        self.assertEqual(
            calls[0]["data"],
            {"grant_type": "client_credentials", "client_id": "cid", "client_secret": "secret"},
        )

    def test_second_acquire_within_ttl_makes_no_network_calls(self):
        first = self.cache.acquire()
        n = len(self.http.calls)
        self.clock.advance(120)
        second = self.cache.acquire()

        self.assertIs(first, second)
        self.assertEqual(len(self.http.calls), n)
        self.assertEqual(len(self.http.calls_to("/oauth2/token")), 1)

    def test_expiry_is_two_hours_regardless_of_expires_in(self):
        cred = self.cache.acquire()
        self.assertEqual(cred.expires_at - cred.issued_at, 7200)
        self.assertAlmostEqual(self.cache.seconds_until_expiry(), 7200)

    def test_revalidates_after_ttl_without_exchange(self):
        self.cache.acquire()
        self.clock.advance(301)
        cred = self.cache.acquire()

        self.assertEqual(cred.token, "tok-1")
        self.assertEqual(len(self.http.calls_to("/oauth2/userinfo")), 1)
        self.assertEqual(len(self.http.calls_to("/oauth2/token")), 1)

    def test_failed_validation_replaces_credential(self):
        self.cache.acquire()
        self.clock.advance(301)
        self.server.valid = False
        cred = self.cache.acquire()

        self.assertEqual(cred.token, "tok-2")
        self.assertEqual(len(self.http.calls_to("/oauth2/token")), 2)
        # only the fresh token's entry survives the wholesale replacement
        self.assertEqual(len(self.cache.policy), 1)

    def test_expired_credential_is_exchanged_again(self):
        self.cache.acquire()
        self.clock.advance(7200)
        self.assertTrue(self.cache.is_expired())
        cred = self.cache.acquire()

        self.assertEqual(cred.token, "tok-2")
        self.assertEqual(len(self.http.calls_to("/oauth2/userinfo")), 0)

    def test_rejected_exchange_raises_auth_error(self):
        self.server.token_status = 400
        with self.assertRaises(AuthError):
            self.cache.acquire()
        self.assertIsNone(self.cache.cached())

    def test_network_failure_raises_auth_error(self):
        http = FakeHttp(lambda m, u, **kw: requests.ConnectionError("down"))
        source = ClientCredentialsSource(http, TOKEN_URL, "cid", "secret")
        cache = TokenCache(source, ValidationPolicy(http, USERINFO_URL, clock=self.clock), clock=self.clock)
        with self.assertRaises(AuthError):
            cache.acquire()

    def test_invalidate_forces_exchange(self):
        self.cache.acquire()
        self.cache.invalidate()
        self.assertIsNone(self.cache.cached())
        self.assertEqual(self.cache.acquire().token, "tok-2")

    def test_concurrent_acquire_exchanges_once(self):
        results = []

        def worker():
            results.append(self.cache.acquire().token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        self.assertEqual(results, ["tok-1"] * 8)
        self.assertEqual(self.server.issued, 1)


class TestStaticToken(unittest.TestCase):
    def setUp(self):
        self.server = IdentityServer()
        self.clock = FakeClock()
        self.http = FakeHttp(self.server)
        policy = ValidationPolicy(self.http, USERINFO_URL, ttl_sec=300, clock=self.clock)
        self.cache = TokenCache(StaticTokenSource("static-abc"), policy, clock=self.clock)

    def test_static_token_validated_before_use(self):
        cred = self.cache.acquire()
        self.assertEqual(cred.token, "static-abc")
        self.assertTrue(cred.static)
        self.assertEqual(len(self.http.calls_to("/oauth2/userinfo")), 1)
        self.assertEqual(self.http.calls_to("/oauth2/token"), [])

        self.cache.acquire()
        self.assertEqual(len(self.http.calls_to("/oauth2/userinfo")), 1)

    def test_invalid_static_token_is_fatal(self):
        self.server.valid = False
        with self.assertRaises(AuthError):
            self.cache.acquire()
        self.assertEqual(self.http.calls_to("/oauth2/token"), [])

    def test_static_token_rejected_later_is_fatal(self):
        self.cache.acquire()
        self.clock.advance(301)
        self.server.valid = False
        with self.assertRaises(AuthError):
            self.cache.acquire()


class TestValidationPolicy(unittest.TestCase):
    def test_negative_result_is_cached_too(self):
        server = IdentityServer()
        server.valid = False
        clock = FakeClock()
        http = FakeHttp(server)
        policy = ValidationPolicy(http, USERINFO_URL, ttl_sec=300, clock=clock)

        self.assertFalse(policy.is_valid("t" * 80))
        self.assertFalse(policy.is_valid("t" * 80))
        self.assertEqual(len(http.calls), 1)

    def test_network_error_counts_as_invalid(self):
        http = FakeHttp(lambda m, u, **kw: requests.Timeout("slow"))
        policy = ValidationPolicy(http, USERINFO_URL)
        self.assertFalse(policy.validate("abc"))


class TestSourceSelection(unittest.TestCase):
    def _settings(self, **kw):
        base = dict(instance_url=INSTANCE, dataspace="default", sql_query="SELECT 1")
        base.update(kw)
        return Settings(**base)

    def test_oauth_preferred_when_configured(self):
        s = self._settings(use_oauth=True, client_id="a", client_secret="b", access_token="static")
        self.assertIsInstance(build_credential_source(s, FakeHttp(IdentityServer())), ClientCredentialsSource)

    def test_static_token_without_oauth(self):
        s = self._settings(access_token="static")
        self.assertIsInstance(build_credential_source(s, FakeHttp(IdentityServer())), StaticTokenSource)

    def test_no_source_raises_on_acquire(self):
        s = self._settings()
        http = FakeHttp(IdentityServer())
        self.assertIsNone(build_credential_source(s, http))
        cache = TokenCache(None, ValidationPolicy(http, USERINFO_URL))
        with self.assertRaises(AuthError):
            cache.acquire()
        self.assertEqual(http.calls, [])


if __name__ == "__main__":
    unittest.main()
