"""
Gateway error taxonomy.

Every failure the gateway can report to a caller is a ``GatewayError``
subclass carrying its HTTP status. ``main.py`` renders them as
``{"success": false, "message": ...}``.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_message = "An error occurred on the server."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRegistry(GatewayError):
    status_code = 400
    default_message = "Invalid contractType specified."


class MissingClaimant(GatewayError):
    status_code = 400
    default_message = "userAddress query parameter is required."


class InvalidTokenId(GatewayError):
    status_code = 400
    default_message = "tokenId must be a positive integer."


class InvalidQuery(GatewayError):
    status_code = 400
    default_message = "Invalid query parameter."


class NotOwner(GatewayError):
    status_code = 403
    default_message = "You are not the owner of this DAT."


class TokenNotFound(GatewayError):
    status_code = 404
    default_message = "Token does not exist or could not be found."


class UpstreamUnavailable(GatewayError):
    """Any contract-call or RPC failure other than a revert."""

    status_code = 500
