from .tokens import (
    CachedToken,
    EmbeddedTokenProvider,
    TokenRegistry,
    TokenService,
    extract_embedded_token,
    get_token_registry,
)

__all__ = [
    "CachedToken",
    "EmbeddedTokenProvider",
    "TokenRegistry",
    "TokenService",
    "extract_embedded_token",
    "get_token_registry",
]
