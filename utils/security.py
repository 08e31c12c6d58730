import re


def redact_secrets(text: str) -> str:
    """Redact credentials from log lines and error strings."""
    if not isinstance(text, str):
        return text

    redacted = text

    # Query or form params: client_secret=, access_token=, token=, secret=, password=
    redacted = re.sub(
        r"(?i)(client_secret|access_token|refresh_token|token|secret|password)=([^&\s]+)",
        r"\1=***REDACTED***",
        redacted,
    )

    # JSON bodies returned by the credential exchange
    redacted = re.sub(r'(?i)("access_token"\s*:\s*")[^"]+(")', r"\1***REDACTED***\2", redacted)

    # Authorization: Basic/Bearer <value>
    redacted = re.sub(
        r"(?i)Authorization:\s*(Basic|Bearer)\s+[A-Za-z0-9._\-+/=]+",
        r"Authorization: \1 ***REDACTED***",
        redacted,
    )

    # Bare bearer tokens
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer ***REDACTED***", redacted)

    return redacted


def is_configured_key(value: str) -> bool:
    """Return True if an env var-like key is configured (not empty or placeholder)."""
    if not value:
        return False
    s = value.strip()
    if not s:
        return False
    return ("YOUR_" not in s) and ("your_" not in s)
