"""
Client identity extraction for rate limit partitioning.
"""

from fastapi import Request

API_KEY_HEADER = "X-API-Key"
UNKNOWN_CLIENT = "unknown"


def extract_client_id(request: Request) -> str:
    """Pick the bucket identity for a request.

    An explicit API key wins; otherwise the caller's network origin is used.
    Callers with neither share the ``"unknown"`` bucket.
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key and api_key.strip():
        return api_key.strip()

    return get_client_ip(request)


def get_client_ip(request: Request) -> str:
    """Extract the caller IP from proxy headers or the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_CLIENT
