"""Credential acquisition and caching."""

from .credentials import Credential, CredentialProvider, TokenSource, TokenSourceFactory
from .sources import (
    IamTokenSource,
    JwtSigner,
    SelfSignedJwtSource,
    ServiceAccountTokenSource,
    build_token_source,
    parse_rfc3339,
)

__all__ = [
    "Credential",
    "CredentialProvider",
    "TokenSource",
    "TokenSourceFactory",
    "JwtSigner",
    "SelfSignedJwtSource",
    "IamTokenSource",
    "ServiceAccountTokenSource",
    "build_token_source",
    "parse_rfc3339",
]
