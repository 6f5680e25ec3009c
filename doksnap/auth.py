"""
API key authentication and rate limiting for the status API.
"""

import hmac
import time
import threading
from functools import wraps

from flask import current_app, jsonify, request


RATE_LIMIT_REQUESTS = 60
RATE_LIMIT_WINDOW = 60  # seconds


class RateLimiter:
    """Fixed-window request counter per client address."""

    def __init__(self, max_requests: int = RATE_LIMIT_REQUESTS, window: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._clients = {}
        self._lock = threading.Lock()

    def allow(self, client: str, now: float = None) -> bool:
        """
        Count a request from client.

        Returns:
            False once the client exceeded max_requests in the current window
        """
        now = time.time() if now is None else now

        with self._lock:
            # Drop expired windows
            for key in [k for k, (_, start) in self._clients.items() if start < now - self.window]:
                del self._clients[key]

            count, start = self._clients.get(client, (0, now))
            if count >= self.max_requests:
                return False
            self._clients[client] = (count + 1, start)
            return True


def verify_api_key(provided: str, expected: str) -> bool:
    """Constant-time API key comparison."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def api_key_required(view):
    """
    Protect a status route with the configured API key.

    A no-op unless status_server.require_auth is enabled. The key is read
    from the X-API-Key header or the api_key query parameter.
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        state = current_app.extensions['doksnap']
        settings = state.config.status_server

        if settings.require_auth:
            provided = request.headers.get('X-API-Key') or request.args.get('api_key')
            if not verify_api_key(provided, settings.api_key):
                return jsonify({'error': 'Unauthorized. Provide X-API-Key header or api_key parameter.'}), 401

            if not state.rate_limiter.allow(request.remote_addr or 'unknown'):
                return jsonify({'error': 'Rate limit exceeded. Max 60 requests per minute.'}), 429

        return view(*args, **kwargs)

    return wrapped
