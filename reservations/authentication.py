"""
Token authentication for the reservation API.

Issuing and revoking tokens belongs to the identity service; this class
only gives the settings a stable import path for DRF's token check.
"""
from __future__ import annotations

from rest_framework import authentication


class TokenAuthentication(authentication.TokenAuthentication):
    """``Authorization: Token <key>``, resolved to ``request.user``."""

    keyword = 'Token'
