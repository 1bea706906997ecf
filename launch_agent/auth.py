"""
Bearer token protection for the control API.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def check_token(expected: str, header: str) -> bool:
    """
    Verify an Authorization header against the configured token.

    Args:
        expected: Configured API token
        header: Raw Authorization header value

    Returns:
        True if the header carries the expected bearer token
    """
    scheme, _, token = (header or '').partition(' ')
    if scheme.lower() != 'bearer' or not token:
        return False
    return hmac.compare_digest(token.strip().encode(), expected.encode())


def token_required(view):
    """Reject requests without the bearer token when API_TOKEN is set."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if expected and not check_token(expected, request.headers.get('Authorization', '')):
            return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapped
