import socket
import unittest
from unittest import mock

import requests

from shiftsync.errors import FetchFailed, FetchTimeout, InvalidUrl
from shiftsync.feed_fetcher import (
    MAX_REDIRECTS,
    FeedFetcher,
    detect_source_kind,
    normalize_feed_url,
    validate_feed_url,
)
from shiftsync.models import FetchConfig


GOOGLE_URL = "https://calendar.google.com/calendar/ical/team%40example.com/public/basic.ics"


def _addrinfo(address: str):
    family = socket.AF_INET6 if ":" in address else socket.AF_INET
    return [(family, socket.SOCK_STREAM, 6, "", (address, 0))]


class UrlValidationTests(unittest.TestCase):
    def test_webcal_is_normalized(self) -> None:
        self.assertEqual(
            normalize_feed_url("webcal://p01-calendars.icloud.com/published/2/abc"),
            "https://p01-calendars.icloud.com/published/2/abc",
        )

    def test_detect_source_kind(self) -> None:
        self.assertEqual(detect_source_kind("webcal://p01-calendars.icloud.com/x"), "icloud")
        self.assertEqual(detect_source_kind(GOOGLE_URL), "google")
        self.assertEqual(detect_source_kind("https://rota.example.org/feed.ics"), "custom")
        self.assertEqual(detect_source_kind("https://notgoogle.com/feed.ics"), "custom")

    def test_provider_domain_is_enforced(self) -> None:
        with self.assertRaises(InvalidUrl):
            validate_feed_url("https://evil.example.com/calendar.ics", "icloud")
        with self.assertRaises(InvalidUrl):
            validate_feed_url("https://google.com.evil.net/calendar.ics", "google")
        self.assertEqual(validate_feed_url(GOOGLE_URL, "google"), GOOGLE_URL)

    def test_unsupported_scheme_is_rejected(self) -> None:
        for url in ("ftp://example.com/cal.ics", "file:///etc/passwd", "calendar.ics"):
            with self.subTest(url=url):
                with self.assertRaises(InvalidUrl):
                    validate_feed_url(url, "custom")

    def test_local_and_private_hosts_are_rejected(self) -> None:
        for url in (
            "http://localhost:8080/cal.ics",
            "http://127.0.0.1/cal.ics",
            "http://10.1.2.3/cal.ics",
            "http://192.168.0.10/cal.ics",
            "http://169.254.169.254/latest/meta-data",
            "http://[::1]/cal.ics",
            "http://[::ffff:10.0.0.1]/cal.ics",
            "http://0.0.0.0/cal.ics",
        ):
            with self.subTest(url=url):
                with self.assertRaises(InvalidUrl):
                    validate_feed_url(url, "custom")

    def test_hostname_resolving_to_private_address_is_rejected(self) -> None:
        with mock.patch("shiftsync.feed_fetcher.socket.getaddrinfo", return_value=_addrinfo("10.0.0.5")):
            with self.assertRaises(InvalidUrl):
                validate_feed_url("https://intranet.example.org/cal.ics", "custom")

    def test_unresolvable_hostname_is_rejected(self) -> None:
        with mock.patch("shiftsync.feed_fetcher.socket.getaddrinfo", side_effect=socket.gaierror("no such host")):
            with self.assertRaises(InvalidUrl):
                validate_feed_url("https://nowhere.invalid/cal.ics", "custom")

    def test_public_custom_host_is_accepted(self) -> None:
        with mock.patch("shiftsync.feed_fetcher.socket.getaddrinfo", return_value=_addrinfo("93.184.216.34")):
            self.assertEqual(
                validate_feed_url("webcal://rota.example.org/feed.ics", "custom"),
                "https://rota.example.org/feed.ics",
            )


class FeedFetcherTests(unittest.TestCase):
    def _response(
        self,
        status_code: int = 200,
        content: bytes = b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
        location: str | None = None,
    ):
        response = mock.Mock()
        response.status_code = status_code
        response.ok = status_code < 400
        response.reason = {404: "Not Found", 302: "Found"}.get(status_code, "OK")
        response.headers = {"Location": location} if location else {}
        response.iter_content.return_value = [content[i : i + 512] for i in range(0, len(content), 512)]
        return response

    def test_fetch_returns_decoded_body(self) -> None:
        fetcher = FeedFetcher(FetchConfig(user_agent="rota-bot/1"))
        response = self._response()
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=response) as get:
            body = fetcher.fetch("webcal://p01-calendars.icloud.com/published/2/abc", "icloud")

        self.assertTrue(body.startswith("BEGIN:VCALENDAR"))
        args, kwargs = get.call_args
        self.assertEqual(args[0], "https://p01-calendars.icloud.com/published/2/abc")
        self.assertEqual(kwargs["headers"]["User-Agent"], "rota-bot/1")
        self.assertEqual(kwargs["timeout"], 10.0)
        self.assertFalse(kwargs["allow_redirects"])
        self.assertTrue(kwargs["stream"])
        response.close.assert_called_once_with()

    def test_timeout_maps_to_fetch_timeout(self) -> None:
        fetcher = FeedFetcher()
        with mock.patch("shiftsync.feed_fetcher.requests.get", side_effect=requests.Timeout("slow")):
            with self.assertRaises(FetchTimeout) as ctx:
                fetcher.fetch(GOOGLE_URL, "google")
        self.assertEqual(ctx.exception.message, "Request timed out after 10 seconds. Please try again.")
        self.assertEqual(ctx.exception.status_code, 504)

    def test_connection_error_maps_to_fetch_failed(self) -> None:
        fetcher = FeedFetcher()
        with mock.patch("shiftsync.feed_fetcher.requests.get", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(FetchFailed):
                fetcher.fetch(GOOGLE_URL, "google")

    def test_read_error_while_streaming_maps_to_fetch_failed(self) -> None:
        fetcher = FeedFetcher()
        response = self._response()
        response.iter_content.side_effect = requests.exceptions.ChunkedEncodingError("connection reset")
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=response):
            with self.assertRaises(FetchFailed):
                fetcher.fetch(GOOGLE_URL, "google")
        response.close.assert_called_once_with()

    def test_http_error_status_maps_to_fetch_failed(self) -> None:
        fetcher = FeedFetcher()
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=self._response(404, b"")):
            with self.assertRaises(FetchFailed) as ctx:
                fetcher.fetch(GOOGLE_URL, "google")
        self.assertIn("HTTP 404 Not Found", ctx.exception.message)

    def test_oversized_document_stops_reading_at_the_cap(self) -> None:
        fetcher = FeedFetcher(FetchConfig(max_bytes=1024))
        response = self._response()
        pulled = []

        def chunks(chunk_size: int):
            for _ in range(100):
                pulled.append(chunk_size)
                yield b"x" * 512

        response.iter_content.side_effect = chunks
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=response):
            with self.assertRaises(FetchFailed):
                fetcher.fetch(GOOGLE_URL, "google")
        self.assertEqual(len(pulled), 3)

    def test_invalid_url_is_not_fetched(self) -> None:
        fetcher = FeedFetcher()
        with mock.patch("shiftsync.feed_fetcher.requests.get") as get:
            with self.assertRaises(InvalidUrl):
                fetcher.fetch("http://127.0.0.1/cal.ics", "custom")
        get.assert_not_called()


class RedirectTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fetcher = FeedFetcher()
        self.resolver = mock.patch(
            "shiftsync.feed_fetcher.socket.getaddrinfo",
            return_value=_addrinfo("93.184.216.34"),
        )
        self.resolver.start()

    def tearDown(self) -> None:
        self.resolver.stop()

    def _response(self, status_code: int, location: str | None = None, content: bytes = b""):
        response = mock.Mock()
        response.status_code = status_code
        response.ok = status_code < 400
        response.reason = "Found" if status_code == 302 else "OK"
        response.headers = {"Location": location} if location else {}
        response.iter_content.return_value = [content]
        return response

    def test_redirect_to_loopback_is_rejected(self) -> None:
        redirect = self._response(302, "http://127.0.0.1:8080/admin")
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=redirect) as get:
            with self.assertRaises(InvalidUrl):
                self.fetcher.fetch("https://rota.example.org/feed.ics", "custom")
        self.assertEqual(get.call_count, 1)
        redirect.iter_content.assert_not_called()

    def test_redirect_to_metadata_address_is_rejected_for_provider_feeds(self) -> None:
        redirect = self._response(301, "http://169.254.169.254/latest/meta-data")
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=redirect):
            with self.assertRaises(InvalidUrl):
                self.fetcher.fetch(GOOGLE_URL, "google")

    def test_redirect_to_host_resolving_privately_is_rejected(self) -> None:
        redirect = self._response(307, "https://internal.example.org/cal.ics")

        def resolve(hostname, *_args, **_kwargs):
            return _addrinfo("10.0.0.7" if hostname == "internal.example.org" else "93.184.216.34")

        with mock.patch("shiftsync.feed_fetcher.socket.getaddrinfo", side_effect=resolve):
            with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=redirect):
                with self.assertRaises(InvalidUrl):
                    self.fetcher.fetch("https://rota.example.org/feed.ics", "custom")

    def test_public_redirect_is_followed(self) -> None:
        responses = [
            self._response(302, "/v2/feed.ics"),
            self._response(200, content=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"),
        ]
        with mock.patch("shiftsync.feed_fetcher.requests.get", side_effect=responses) as get:
            body = self.fetcher.fetch("https://rota.example.org/feed.ics", "custom")

        self.assertTrue(body.startswith("BEGIN:VCALENDAR"))
        self.assertEqual(get.call_args_list[1].args[0], "https://rota.example.org/v2/feed.ics")
        responses[0].close.assert_called_once_with()

    def test_redirect_loop_is_cut_off(self) -> None:
        loop = self._response(302, "https://rota.example.org/feed.ics")
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=loop) as get:
            with self.assertRaises(FetchFailed):
                self.fetcher.fetch("https://rota.example.org/feed.ics", "custom")
        self.assertEqual(get.call_count, MAX_REDIRECTS + 1)

    def test_redirect_without_location_fails(self) -> None:
        with mock.patch("shiftsync.feed_fetcher.requests.get", return_value=self._response(302)):
            with self.assertRaises(FetchFailed):
                self.fetcher.fetch("https://rota.example.org/feed.ics", "custom")


if __name__ == "__main__":
    unittest.main()
