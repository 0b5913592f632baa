"""Tests for the HTTP transport and the SectigoClient request pipeline."""

import json
import threading
import time
import unittest
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import requests
from requests.structures import CaseInsensitiveDict

from sectigo import (
    ApiAuthenticationError,
    ApiConfig,
    ApiRequestError,
    ApiValidationError,
    CancellationToken,
    ClientClosedError,
    HttpClient,
    OperationCancelledError,
    PaginationStyle,
    RequestsHttpClient,
    SectigoClient,
    TokenInfo,
    is_not_modified,
)

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


def make_response(status_code=200, body=None, headers=None):
    response = requests.Response()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers or {})
    if body is None:
        content = b""
    elif isinstance(body, str | bytes):
        content = body.encode("utf-8") if isinstance(body, str) else body
    else:
        content = json.dumps(body).encode("utf-8")
    response._content = content
    response._content_consumed = True
    response.encoding = "utf-8"
    return response


class MockHttpClient(HttpClient):
    """Mock transport returning scripted responses and recording every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def request(self, method, url, headers=None, data=None, timeout=30):
        with self._lock:
            self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "data": data, "timeout": timeout})
            if len(self.responses) > 1:
                return self.responses.pop(0)
            return self.responses[0]

    def close(self):
        self.closed = True


class SleepRecorder:

    def __init__(self):
        self.delays = []

    def __call__(self, seconds, cancellation=None):
        self.delays.append(seconds)


def make_config(**overrides):
    values = {
        "base_url": "https://cert-manager.com/api",
        "customer_uri": "acme",
        "username": "api-user",
        "password": "s3cret",
        "retry_initial_delay": 0.5,
    }
    values.update(overrides)
    return ApiConfig(**values)


def make_client(*responses, sleep=None, **overrides):
    transport = MockHttpClient(*(responses or (make_response(200, {}),)))
    client = SectigoClient(make_config(**overrides), http_client=transport, sleep=sleep or SleepRecorder())
    return client, transport


# =============================================================================
# RequestsHttpClient
# =============================================================================


class TestRequestsHttpClient(unittest.TestCase):
    """Tests for the requests.Session-backed transport."""

    def test_sends_json_body_through_session(self):
        client = RequestsHttpClient()
        with patch.object(client.session, "request", return_value=make_response(201)) as mock_request:
            response = client.request("POST", "https://example.com/x", headers={"A": "1"}, data={"k": "v"}, timeout=10)

        self.assertEqual(response.status_code, 201)
        mock_request.assert_called_once_with(
            "POST", "https://example.com/x", headers={"A": "1"}, json={"k": "v"}, timeout=10
        )

    def test_client_certificate_is_set_on_session(self):
        client = RequestsHttpClient(client_certificate=("cert.pem", "key.pem"))
        self.assertEqual(client.session.cert, ("cert.pem", "key.pem"))

    def test_configure_session_hook_is_called(self):
        hook = MagicMock()
        client = RequestsHttpClient(configure_session=hook)
        hook.assert_called_once_with(client.session)

    def test_rejects_invalid_timeout(self):
        client = RequestsHttpClient()
        with self.assertRaises(AssertionError):
            client.request("GET", "https://example.com", timeout=0)

    def test_close_closes_session(self):
        client = RequestsHttpClient()
        with patch.object(client.session, "close") as mock_close:
            client.close()
        mock_close.assert_called_once()


# =============================================================================
# Request construction
# =============================================================================


class TestSectigoClientRequests(unittest.TestCase):
    """Tests for how SectigoClient builds requests."""

    def test_base_url_normalised_to_single_slash(self):
        client, _ = make_client(base_url="https://cert-manager.com/api///")
        self.assertEqual(client.base_url, "https://cert-manager.com/api/")

    def test_relative_path_joined_without_double_slash(self):
        client, transport = make_client()

        client.get("/v1/certificate/42")

        self.assertEqual(transport.calls[0]["url"], "https://cert-manager.com/api/v1/certificate/42")

    def test_default_headers(self):
        client, transport = make_client()

        client.get("v1/profile")

        headers = transport.calls[0]["headers"]
        self.assertEqual(headers["Accept"], "application/json")
        self.assertEqual(headers["customerUri"], "acme")
        self.assertEqual(headers["login"], "api-user")
        self.assertEqual(headers["password"], "s3cret")

    def test_exactly_one_auth_scheme_with_token(self):
        client, transport = make_client(token="tok-1")

        client.get("v1/profile")

        headers = transport.calls[0]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer tok-1")
        self.assertNotIn("login", headers)
        self.assertNotIn("password", headers)

    def test_extra_headers_cannot_override_auth(self):
        client, transport = make_client(token="tok-1")

        client.get("v1/profile", headers={"Authorization": "Bearer forged", "X-Trace": "1"})

        headers = transport.calls[0]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer tok-1")
        self.assertEqual(headers["X-Trace"], "1")

    def test_extra_password_headers_dropped_for_token_client(self):
        """Should never send a second auth scheme supplied by the caller."""
        client, transport = make_client(token="tok-1", username=None, password=None)

        client.get("v1/profile", headers={"login": "other", "Password": "pw", "authorization": "Bearer forged"})

        headers = transport.calls[0]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer tok-1")
        self.assertEqual(
            {name.lower() for name in headers} & {"login", "password"},
            set(),
        )
        self.assertNotIn("authorization", headers)

    def test_extra_authorization_dropped_for_password_client(self):
        client, transport = make_client()

        client.get("v1/profile", headers={"Authorization": "Bearer forged", "login": "other"})

        headers = transport.calls[0]["headers"]
        self.assertNotIn("Authorization", headers)
        self.assertEqual(headers["login"], "api-user")
        self.assertEqual(headers["password"], "s3cret")

    def test_customer_uri_header_always_sent(self):
        client, transport = make_client(token="tok-1", username=None, password=None, customer_uri="tenant-9")

        client.delete("v1/certificate/1")

        self.assertEqual(transport.calls[0]["headers"]["customerUri"], "tenant-9")

    def test_post_sends_body_and_timeout(self):
        client, transport = make_client(make_response(200, {"id": 7}), request_timeout=12)

        client.post("v1/order", body={"csr": "..."})

        call = transport.calls[0]
        self.assertEqual(call["method"], "POST")
        self.assertEqual(call["data"], {"csr": "..."})
        self.assertEqual(call["timeout"], 12)

    def test_put_and_delete(self):
        client, transport = make_client()

        client.put("v1/organization/1", body={"name": "ACME"})
        client.delete("v1/certificate/1")

        self.assertEqual([c["method"] for c in transport.calls], ["PUT", "DELETE"])

    def test_get_json(self):
        client, _ = make_client(make_response(200, {"sslId": 42}))
        self.assertEqual(client.get_json("v1/certificate/42"), {"sslId": 42})

    def test_get_json_empty_body(self):
        client, _ = make_client(make_response(204))
        self.assertIsNone(client.get_json("v1/certificate/42"))

    def test_invalid_config_rejected(self):
        with self.assertRaises(ValueError):
            SectigoClient(make_config(customer_uri=""), http_client=MockHttpClient(make_response()))


# =============================================================================
# Retries and errors
# =============================================================================


class TestSectigoClientRetries(unittest.TestCase):
    """Tests for retry and error handling in the pipeline."""

    def test_retries_transient_then_succeeds(self):
        sleep = SleepRecorder()
        client, transport = make_client(
            make_response(503), make_response(429), make_response(200, {"ok": True}), sleep=sleep
        )

        response = client.get("v1/certificate")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(transport.calls), 3)
        self.assertEqual(sleep.delays, [0.5, 1.0])

    def test_error_raised_once_after_retries_exhausted(self):
        sleep = SleepRecorder()
        client, transport = make_client(
            make_response(500, {"code": -2, "description": "Internal error"}),
            sleep=sleep,
            retry_max_attempts=3,
        )

        with self.assertRaises(ApiRequestError) as ctx:
            client.get("v1/certificate")

        self.assertEqual(len(transport.calls), 3)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("Internal error", str(ctx.exception))

    def test_retry_after_respected(self):
        sleep = SleepRecorder()
        client, _ = make_client(
            make_response(429, headers={"Retry-After": "2"}), make_response(200), sleep=sleep
        )

        client.get("v1/certificate")

        self.assertEqual(len(sleep.delays), 1)
        self.assertGreaterEqual(sleep.delays[0], 2.0)

    def test_authentication_error(self):
        client, transport = make_client(make_response(401, {"code": -16, "description": "Unknown user"}))

        with self.assertRaises(ApiAuthenticationError) as ctx:
            client.get("v1/certificate")

        self.assertEqual(ctx.exception.code, -16)
        self.assertIn("Unknown user", str(ctx.exception))
        self.assertEqual(len(transport.calls), 1)

    def test_validation_error(self):
        client, _ = make_client(make_response(400, {"code": -7, "description": "Missing field"}))

        with self.assertRaises(ApiValidationError):
            client.post("v1/order", body={})

    def test_transport_error_propagates(self):
        transport = MockHttpClient(make_response())
        transport.request = MagicMock(side_effect=requests.ConnectionError("unreachable"))
        client = SectigoClient(make_config(), http_client=transport, sleep=SleepRecorder())

        with self.assertRaises(requests.ConnectionError):
            client.get("v1/certificate")


# =============================================================================
# Token refresh
# =============================================================================


class TestSectigoClientTokenRefresh(unittest.TestCase):

    def test_token_refreshed_before_request(self):
        refresh = MagicMock(return_value=TokenInfo("fresh", NOW + timedelta(hours=1)))
        transport = MockHttpClient(make_response(200))
        client = SectigoClient(
            make_config(username=None, password=None, token="stale", token_expires_at=NOW, token_refresh=refresh),
            http_client=transport,
            sleep=SleepRecorder(),
            clock=lambda: NOW,
        )

        client.get("v1/certificate")

        refresh.assert_called_once()
        self.assertEqual(transport.calls[0]["headers"]["Authorization"], "Bearer fresh")

    @patch("sectigo._auth.requests.post")
    def test_client_credentials_fetch_token(self, mock_post):
        token_response = make_response(200, {"access_token": "cc-token", "expires_in": 3600})
        mock_post.return_value = token_response
        transport = MockHttpClient(make_response(200))
        client = SectigoClient(
            make_config(
                username=None,
                password=None,
                token_url="https://auth.test/token",
                client_id="cid",
                client_secret="csecret",
                request_timeout=9,
            ),
            http_client=transport,
            sleep=SleepRecorder(),
            clock=lambda: NOW,
        )

        client.get("v1/certificate")
        client.get("v1/certificate")

        mock_post.assert_called_once_with(
            "https://auth.test/token",
            data={"grant_type": "client_credentials", "client_id": "cid", "client_secret": "csecret"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=9,
        )
        for call in transport.calls:
            self.assertEqual(call["headers"]["Authorization"], "Bearer cc-token")
            self.assertNotIn("login", call["headers"])

    @patch("sectigo._auth.requests.post")
    def test_token_refresh_callback_takes_priority_over_client_credentials(self, mock_post):
        refresh = MagicMock(return_value=TokenInfo("from-callback", NOW + timedelta(hours=1)))
        transport = MockHttpClient(make_response(200))
        client = SectigoClient(
            make_config(
                token_refresh=refresh,
                token_url="https://auth.test/token",
                client_id="cid",
                client_secret="csecret",
            ),
            http_client=transport,
            sleep=SleepRecorder(),
            clock=lambda: NOW,
        )

        client.get("v1/certificate")

        mock_post.assert_not_called()
        self.assertEqual(transport.calls[0]["headers"]["Authorization"], "Bearer from-callback")

    def test_concurrent_requests_share_one_refresh(self):
        calls = []

        def refresh(cancellation):
            calls.append(1)
            time.sleep(0.05)
            return TokenInfo("fresh", NOW + timedelta(hours=1))

        transport = MockHttpClient(make_response(200))
        client = SectigoClient(
            make_config(username=None, password=None, token="stale", token_expires_at=NOW, token_refresh=refresh),
            http_client=transport,
            sleep=SleepRecorder(),
            clock=lambda: NOW,
        )

        threads = [threading.Thread(target=client.get, args=("v1/certificate",)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(transport.calls), 8)
        for call in transport.calls:
            self.assertEqual(call["headers"]["Authorization"], "Bearer fresh")


# =============================================================================
# ETag cache
# =============================================================================


class TestSectigoClientETag(unittest.TestCase):

    def test_etag_round_trip(self):
        """200 with ETag, then 304 for the same URL with If-None-Match sent."""
        client, transport = make_client(
            make_response(200, {"id": 1}, headers={"ETag": '"v1"'}),
            make_response(304),
            enable_etag_cache=True,
        )

        first = client.get("v1/certificate/1")
        second = client.get("v1/certificate/1")

        self.assertEqual(first.status_code, 200)
        self.assertNotIn("If-None-Match", transport.calls[0]["headers"])
        self.assertEqual(transport.calls[1]["headers"]["If-None-Match"], '"v1"')
        self.assertTrue(is_not_modified(second))
        self.assertEqual(len(transport.calls), 2)

    def test_get_json_returns_none_on_not_modified(self):
        client, _ = make_client(
            make_response(200, {"id": 1}, headers={"ETag": '"v1"'}),
            make_response(304),
            enable_etag_cache=True,
        )

        client.get_json("v1/certificate/1")
        self.assertIsNone(client.get_json("v1/certificate/1"))

    def test_etag_cache_disabled_by_default(self):
        client, transport = make_client(
            make_response(200, {"id": 1}, headers={"ETag": '"v1"'}),
            make_response(200, {"id": 1}, headers={"ETag": '"v1"'}),
        )

        client.get("v1/certificate/1")
        client.get("v1/certificate/1")

        self.assertIsNone(client.etag_cache)
        self.assertNotIn("If-None-Match", transport.calls[1]["headers"])

    def test_etag_not_sent_for_writes(self):
        client, transport = make_client(
            make_response(200, {"id": 1}, headers={"ETag": '"v1"'}),
            enable_etag_cache=True,
        )

        client.get("v1/organization/1")
        client.put("v1/organization/1", body={"name": "x"})

        self.assertNotIn("If-None-Match", transport.calls[1]["headers"])


# =============================================================================
# Throttle and cancellation
# =============================================================================


class TestSectigoClientConcurrency(unittest.TestCase):

    def test_concurrency_limit_bounds_in_flight_requests(self):
        entered = threading.Condition()
        release = threading.Event()
        state = {"current": 0, "max": 0}

        class BlockingTransport(MockHttpClient):
            def request(self, method, url, headers=None, data=None, timeout=30):
                with entered:
                    state["current"] += 1
                    state["max"] = max(state["max"], state["current"])
                    entered.notify_all()
                release.wait(timeout=5)
                with entered:
                    state["current"] -= 1
                return super().request(method, url, headers, data, timeout)

        transport = BlockingTransport(make_response(200))
        client = SectigoClient(make_config(concurrency_limit=2), http_client=transport, sleep=SleepRecorder())

        threads = [threading.Thread(target=client.get, args=("v1/certificate",)) for _ in range(5)]
        for t in threads:
            t.start()

        with entered:
            self.assertTrue(entered.wait_for(lambda: state["current"] == 2, timeout=5))
        self.assertEqual(client.throttle.in_flight, 2)
        self.assertEqual(transport.calls, [])

        release.set()
        for t in threads:
            t.join(timeout=5)

        self.assertEqual(len(transport.calls), 5)
        self.assertLessEqual(state["max"], 2)
        self.assertEqual(client.throttle.in_flight, 0)

    def test_cancelled_request_is_not_sent(self):
        client, transport = make_client()
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(OperationCancelledError):
            client.get("v1/certificate", cancellation=token)

        self.assertEqual(transport.calls, [])


# =============================================================================
# Pagination
# =============================================================================


class TestSectigoClientPagination(unittest.TestCase):

    def test_iter_collection_position_style(self):
        client, transport = make_client(
            make_response(200, [{"id": 1}, {"id": 2}]),
            make_response(200, [{"id": 3}]),
        )

        items = list(client.iter_collection("v1/certificate", page_size=2, params={"status": "Issued"}))

        self.assertEqual([i["id"] for i in items], [1, 2, 3])
        self.assertEqual(
            [c["url"] for c in transport.calls],
            [
                "https://cert-manager.com/api/v1/certificate?size=2&position=0&status=Issued",
                "https://cert-manager.com/api/v1/certificate?size=2&position=2&status=Issued",
            ],
        )

    def test_iter_collection_page_number_style(self):
        client, transport = make_client(
            make_response(200, ["a", "b"]),
            make_response(200, []),
        )

        items = list(client.iter_collection("v1/order", page_size=2, style=PaginationStyle.PAGE_NUMBER))

        self.assertEqual(items, ["a", "b"])
        self.assertEqual(
            [c["url"] for c in transport.calls],
            [
                "https://cert-manager.com/api/v1/order?page=1&size=2",
                "https://cert-manager.com/api/v1/order?page=2&size=2",
            ],
        )

    def test_iter_collection_rejects_non_list(self):
        client, _ = make_client(make_response(200, {"not": "a list"}))

        with self.assertRaises(ValueError):
            list(client.iter_collection("v1/certificate"))

    def test_enumerate_pages_uses_custom_fetcher(self):
        client, _ = make_client()
        pages = iter([[1, 2], [3]])

        items = list(client.enumerate_pages(lambda cursor, cancellation: next(pages), page_size=2))

        self.assertEqual(items, [1, 2, 3])


# =============================================================================
# Lifecycle
# =============================================================================


class TestSectigoClientLifecycle(unittest.TestCase):

    def test_use_after_close_raises(self):
        client, transport = make_client()
        client.close()

        self.assertTrue(client.closed)
        with self.assertRaises(ClientClosedError):
            client.get("v1/certificate")
        self.assertEqual(transport.calls, [])

    def test_close_is_idempotent(self):
        client, _ = make_client()
        client.close()
        client.close()
        self.assertTrue(client.closed)

    def test_injected_transport_is_not_closed(self):
        client, transport = make_client()
        client.close()
        self.assertFalse(transport.closed)

    def test_owned_transport_is_closed(self):
        client = SectigoClient(make_config())
        with patch.object(client._http, "close") as mock_close:
            client.close()
        mock_close.assert_called_once()

    def test_context_manager(self):
        transport = MockHttpClient(make_response())
        with SectigoClient(make_config(), http_client=transport) as client:
            client.get("v1/certificate")
        self.assertTrue(client.closed)

    def test_enumerate_pages_after_close_raises(self):
        client, _ = make_client()
        client.close()
        with self.assertRaises(ClientClosedError):
            client.enumerate_pages(lambda cursor, cancellation: [])


if __name__ == "__main__":
    unittest.main()
