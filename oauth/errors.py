"""OAuth protocol errors.

Every failure the proxy reports to an OAuth client goes through OAuthError
so the JSON body and headers stay RFC 6749 shaped.
"""

from typing import Optional

from fastapi.responses import JSONResponse


class OAuthError(Exception):
    """An OAuth error response ({error, error_description})."""

    error = "server_error"

    def __init__(self, description: Optional[str] = None, status_code: int = 400):
        super().__init__(description or self.error)
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            self.to_dict(),
            status_code=self.status_code,
            headers={"Cache-Control": "no-store"},
        )


class ClientInputError(OAuthError):
    """Missing or malformed required parameter."""

    error = "invalid_request"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class StateMismatchError(InvalidGrantError):
    """Unknown state at callback time or unknown proxy code at token time."""


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"
