import http.client
import json
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import requests
import structlog

logger = structlog.get_logger()


class TransientDeliveryError(Exception):
    """Network failure, rate limiting or a server error; the batch may be retried"""


class DeliveryRejectedError(Exception):
    """The gateway refused the batch as invalid; retrying it cannot succeed"""


class Transport(Protocol):
    def send(self, events: List[Dict[str, Any]]) -> None:
        ...

    def beacon(self, events: List[Dict[str, Any]]) -> None:
        ...


class HttpTransport:
    """Delivers batches to the ingestion gateway's batch endpoint"""

    def __init__(
            self,
            api_url: str,
            api_key: str,
            timeout: float = 10.0,
            session: Optional[requests.Session] = None
    ):
        self.batch_url = f"{api_url.rstrip('/')}/events/batch"
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "X-API-Key": self.api_key}

    def send(self, events: List[Dict[str, Any]]) -> None:
        try:
            response = self.session.post(
                self.batch_url,
                json={"events": events},
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransientDeliveryError(f"Network error: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientDeliveryError(f"HTTP {status}")
        if status >= 400:
            raise DeliveryRejectedError(f"HTTP {status}: {response.text[:200]}")

    def beacon(self, events: List[Dict[str, Any]]) -> None:
        """
        Fire-and-forget delivery for teardown: write the request and close
        without waiting for the response. Failures are logged, never raised.
        """
        url = urlsplit(self.batch_url)
        connection_cls = http.client.HTTPSConnection if url.scheme == "https" else http.client.HTTPConnection
        body = json.dumps({"events": events}).encode("utf-8")
        path = url.path + (f"?{url.query}" if url.query else "")

        connection = connection_cls(url.hostname, url.port, timeout=2.0)
        try:
            connection.request("POST", path, body=body, headers=self._headers())
        except (OSError, http.client.HTTPException) as e:
            logger.warning("beacon_failed", url=self.batch_url, error=str(e))
        finally:
            connection.close()
