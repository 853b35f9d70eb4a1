"""What may appear in logs and error responses.

Claims and articles submitted for assessment are treated like credentials:
they are redacted from every structured log record.
"""

CREDENTIAL_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "access_token",
        "refresh_token",
        "auth_token",
        "authorization",
        "api_key",
        "apikey",
        "key",
        "bearer",
        "cookie",
    }
)

# Matched as substrings, so "article_text" also covers "articleText" lowercased.
USER_CONTENT_KEYS: frozenset[str] = frozenset(
    {
        "query",
        "question",
        "article_text",
        "articletext",
        "claim",
        "prompt",
        "email",
        "phone",
    }
)

SENSITIVE_KEYS: frozenset[str] = CREDENTIAL_KEYS | USER_CONTENT_KEYS

# Error envelope fields by environment; anything else is stripped.
PRODUCTION_ERROR_FIELDS: frozenset[str] = frozenset({"correlation_id", "type"})
DEVELOPMENT_ERROR_FIELDS: frozenset[str] = PRODUCTION_ERROR_FIELDS | {
    "details",
    "traceback",
    "exception_type",
    "validation_errors",
}


def get_allowed_error_fields(environment: str) -> frozenset[str]:
    if environment == "production":
        return PRODUCTION_ERROR_FIELDS
    return DEVELOPMENT_ERROR_FIELDS


def is_sensitive_key(key: str) -> bool:
    """True when `key` contains any sensitive name, case-insensitively."""
    lowered = key.lower()
    return any(name in lowered for name in SENSITIVE_KEYS)
