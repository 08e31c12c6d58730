"""
HTTP helper with retries + identifying headers shared by credential and listing calls.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from listings.errors import NetworkError
from utils.security import redact_secrets

logger = logging.getLogger(__name__)


class UpstreamHttp:
    def __init__(self, user_agent: str, timeout: float = 10.0, max_retries: int = 2, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        if session is None:
            retry = Retry(
                total=max_retries,
                backoff_factor=0.5,
                # 429 is not retried here; callers map it to UpstreamError.
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["HEAD", "GET", "OPTIONS"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)
        self.session.headers.update(
            {
                "User-Agent": user_agent,
                "Accept": "application/json",
            }
        )

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        channel: str = "",
    ) -> Tuple[int, Any]:
        """
        Issue a GET and return ``(status, decoded_body)``.

        Non-2xx statuses are returned to the caller with whatever body could be
        decoded; transport failures and undecodable 2xx bodies raise NetworkError.
        """
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            logger.warning("HTTP GET timed out %s: %s", url, redact_secrets(str(exc)))
            raise NetworkError(f"Timed out after {self.timeout}s fetching {url}", channel=channel, timeout=True) from exc
        except requests.RequestException as exc:
            logger.warning("HTTP GET exception %s: %s", url, redact_secrets(str(exc)))
            raise NetworkError(f"Transport failure fetching {url}: {redact_secrets(str(exc))}", channel=channel) from exc
        return resp.status_code, self._decode(resp, channel)

    def post_form(
        self,
        url: str,
        data: Dict[str, str],
        auth: Optional[Tuple[str, str]] = None,
    ) -> Tuple[int, Any]:
        try:
            resp = self.session.post(url, data=data, auth=auth, timeout=self.timeout)
        except requests.Timeout as exc:
            logger.warning("HTTP POST timed out %s", url)
            raise NetworkError(f"Timed out after {self.timeout}s posting to {url}", timeout=True) from exc
        except requests.RequestException as exc:
            logger.warning("HTTP POST exception %s: %s", url, redact_secrets(str(exc)))
            raise NetworkError(f"Transport failure posting to {url}: {redact_secrets(str(exc))}") from exc
        return resp.status_code, self._decode(resp, "")

    def close(self) -> None:
        self.session.close()

    @staticmethod
    def _decode(resp: requests.Response, channel: str) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            if 200 <= resp.status_code < 300:
                raise NetworkError(
                    f"Undecodable response body (HTTP {resp.status_code})", channel=channel
                ) from exc
            logger.debug("Non-JSON error body %s: %s", resp.status_code, redact_secrets(resp.text[:200]))
            return None
