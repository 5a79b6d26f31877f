"""Typed /token request bodies.

The body is decoded once at the boundary into one record per grant type.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from oauth.errors import ClientInputError, UnsupportedGrantTypeError


class _GrantRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class AuthorizationCodeGrant(_GrantRequest):
    grant_type: Literal["authorization_code"]
    code: str = Field(min_length=1)
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None


class RefreshTokenGrant(_GrantRequest):
    grant_type: Literal["refresh_token"]
    refresh_token: str = Field(min_length=1)
    scope: Optional[str] = None


TokenRequest = Annotated[
    Union[AuthorizationCodeGrant, RefreshTokenGrant],
    Field(discriminator="grant_type"),
]

_token_request_adapter = TypeAdapter(TokenRequest)

GRANT_TYPES = ("authorization_code", "refresh_token")


def parse_token_request(body: dict) -> Union[AuthorizationCodeGrant, RefreshTokenGrant]:
    """Decode a form or JSON body into its grant record.

    Raises UnsupportedGrantTypeError for a missing or unknown grant_type and
    ClientInputError when the grant's required field is absent.
    """
    if body.get("grant_type") not in GRANT_TYPES:
        raise UnsupportedGrantTypeError()
    try:
        return _token_request_adapter.validate_python(body)
    except ValidationError as e:
        errors = e.errors()
        field = errors[0]["loc"][-1] if errors and errors[0]["loc"] else "request"
        raise ClientInputError(f"{field} required") from e
