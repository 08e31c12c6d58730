"""
Client-credential token cache for upstream calls.

A single ``CredentialCache`` is shared by every fetcher in the process. The
cached ``AccessCredential`` is replaced wholesale on renewal, never mutated.
Concurrent callers that find the credential missing or expired converge on
one exchange: the refresh runs under a lock and re-checks the cache once the
lock is held, so callers queued behind an in-flight refresh reuse its result.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from listings.errors import CredentialError, NetworkError
from listings.http_client import UpstreamHttp
from listings.models import AccessCredential
from utils.security import redact_secrets

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 60.0


class CredentialCache:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        http: UpstreamHttp,
        auth_url: str,
        safety_margin: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http
        self.auth_url = auth_url
        self.safety_margin = safety_margin
        self._clock = clock
        self._credential: Optional[AccessCredential] = None
        self._refresh_lock = threading.Lock()
        self.exchange_count = 0

    def get_token(self) -> AccessCredential:
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential

        with self._refresh_lock:
            credential = self._credential
            if credential is not None and credential.is_valid(self._clock()):
                return credential
            credential = self._exchange()
            self._credential = credential
            return credential

    def invalidate(self) -> None:
        """Forget the cached credential so the next caller refreshes it."""
        self._credential = None

    def snapshot(self) -> Dict[str, object]:
        credential = self._credential
        now = self._clock()
        return {
            "configured": bool(self.client_id and self.client_secret),
            "cached": credential is not None,
            "valid": bool(credential and credential.is_valid(now)),
            "expires_in_seconds": round(credential.expires_at - now, 1) if credential else None,
            "exchanges": self.exchange_count,
        }

    def _exchange(self) -> AccessCredential:
        if not self.client_id or not self.client_secret:
            raise CredentialError("Upstream client id/secret are not configured")

        started = self._clock()
        self.exchange_count += 1
        try:
            status, body = self.http.post_form(
                self.auth_url,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except NetworkError as exc:
            logger.error("Credential exchange failed: %s", redact_secrets(str(exc)))
            raise CredentialError(f"Credential exchange failed: {exc}") from exc

        if not 200 <= status < 300:
            logger.error("Credential exchange returned HTTP %s", status)
            raise CredentialError(f"Credential exchange returned HTTP {status}")

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            error = body.get("error") if isinstance(body, dict) else None
            logger.error("Credential exchange response carried no token (error=%s)", error)
            raise CredentialError(f"Credential exchange response carried no token ({error or 'empty body'})")

        try:
            expires_in = float(body.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600.0

        credential = AccessCredential(token=token, expires_at=started + expires_in - self.safety_margin)
        logger.info("Obtained upstream credential valid for %.0fs", expires_in - self.safety_margin)
        return credential
