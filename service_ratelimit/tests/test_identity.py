"""
Unit tests for client identity extraction.
"""

import pytest
from starlette.requests import Request

from service_ratelimit.app.identity import extract_client_id, get_client_ip


def _request(headers=None, client=("10.0.0.7", 51000)):
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/check",
        "headers": raw_headers,
        "client": client,
    })


class TestExtractClientId:
    """Bucket identity selection."""

    def test_api_key_wins(self):
        request = _request({"X-API-Key": "key-123", "X-Forwarded-For": "203.0.113.9"})

        assert extract_client_id(request) == "key-123"

    def test_blank_api_key_ignored(self):
        request = _request({"X-API-Key": "   "})

        assert extract_client_id(request) == "10.0.0.7"

    def test_forwarded_for_first_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

        assert extract_client_id(request) == "203.0.113.9"

    def test_real_ip_header(self):
        request = _request({"X-Real-IP": "198.51.100.4"})

        assert extract_client_id(request) == "198.51.100.4"

    def test_socket_peer(self):
        assert extract_client_id(_request()) == "10.0.0.7"

    @pytest.mark.parametrize("headers", [None, {"X-Forwarded-For": " , "}])
    def test_unknown_without_origin(self, headers):
        assert get_client_ip(_request(headers, client=None)) == "unknown"
