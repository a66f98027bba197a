"""
Client HTTP du registre externe (lecture seule).

- retry sur les erreurs transitoires (timeout, connexion, 5xx, 408, 429)
  avec backoff exponentiel plafonné : delay(n) = min(base * 2**n, max_delay)
- 4xx / payload illisible -> PermanentClientError immédiate, jamais retentée
- nombre d'appels simultanés borné (sémaphore) pour respecter le rate limit du registre

Aucun effet de bord local.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import requests
from pydantic import ValidationError

from backend.app.core.config import Settings
from backend.app.schemas.registry import RegistryOrganization, RegistryPage, RegistryUnit
from backend.services import metrics
from backend.services.sync_errors import (
    PermanentClientError,
    SnapshotValidationError,
    TransientTransportError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class RegistryClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        concurrency: int = 4,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_url = base_url.rstrip("/")
        self.timeout = (connect_timeout, read_timeout)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._slots = threading.BoundedSemaphore(concurrency)
        self._sleep = sleep

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RegistryClient":
        return cls(
            settings.registry_base_url,
            api_token=settings.registry_api_token,
            connect_timeout=settings.registry_connect_timeout,
            read_timeout=settings.registry_read_timeout,
            max_attempts=settings.registry_max_attempts,
            backoff_base=settings.registry_backoff_base,
            backoff_max=settings.registry_backoff_max,
            concurrency=settings.registry_concurrency,
            **kwargs,
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** max(attempt, 0)), self.backoff_max)

    # ---------- API ----------
    def list_page(self, page: int, page_size: int) -> RegistryPage:
        data = self._get_json("/units", params={"page": page, "page_size": page_size}, endpoint="list_page")
        try:
            return RegistryPage.model_validate(data)
        except ValidationError as e:
            # enveloppe de pagination cassée : le cycle ne peut pas continuer
            raise PermanentClientError(f"Malformed units page {page}: {e.error_count()} validation errors") from e

    def fetch_detail(self, external_id: str) -> RegistryUnit:
        data = self._get_json(f"/units/{external_id}", endpoint="fetch_detail")
        if not isinstance(data, dict):
            raise PermanentClientError(f"Malformed unit {external_id}: expected a JSON object")
        try:
            return RegistryUnit.model_validate(data)
        except ValidationError as e:
            # JSON lisible mais unité invalide : problème de donnée, pas de transport
            raise SnapshotValidationError(f"Invalid unit {external_id}: {e}", payload=data) from e

    def fetch_organization(self, external_id: str) -> RegistryOrganization:
        data = self._get_json(f"/organizations/{external_id}", endpoint="fetch_organization")
        if not isinstance(data, dict):
            raise PermanentClientError(f"Malformed organization {external_id}: expected a JSON object")
        try:
            return RegistryOrganization.model_validate(data)
        except ValidationError as e:
            raise SnapshotValidationError(f"Invalid organization {external_id}: {e}", payload=data) from e

    def health_check(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=(self.timeout[0], 5.0))
        except requests.RequestException:
            return False
        return response.ok

    # ---------- Transport ----------
    def _get_json(self, path: str, *, params: dict[str, Any] | None = None, endpoint: str) -> Any:
        url = f"{self.base_url}{path}"
        last_error: TransientTransportError | None = None

        for attempt in range(self.max_attempts):
            try:
                return self._request_once(url, params, endpoint)
            except TransientTransportError as e:
                last_error = e
                if attempt == self.max_attempts - 1:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "registry_retry_attempt",
                    extra={
                        "endpoint": endpoint,
                        "url": url,
                        "attempt": attempt + 1,
                        "max_attempts": self.max_attempts,
                        "delay_seconds": round(delay, 3),
                        "error": str(e),
                    },
                )
                self._sleep(delay)

        logger.error(
            "registry_retry_exhausted",
            extra={"endpoint": endpoint, "url": url, "attempts": self.max_attempts, "error": str(last_error)},
        )
        raise TransientTransportError(
            f"{endpoint} failed after {self.max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
        ) from last_error

    def _request_once(self, url: str, params: dict[str, Any] | None, endpoint: str) -> Any:
        # le créneau est pris par tentative, pas pendant le backoff
        if not self._slots.acquire(timeout=sum(self.timeout)):
            raise TransientTransportError("No registry concurrency slot available")
        started = time.monotonic()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="timeout").inc()
            raise TransientTransportError(f"Timeout calling {url}") from e
        except requests.ConnectionError as e:
            metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="unreachable").inc()
            raise TransientTransportError(f"Registry unreachable: {e}") from e
        finally:
            self._slots.release()
            metrics.REGISTRY_LATENCY.labels(endpoint=endpoint).observe(time.monotonic() - started)

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="transient").inc()
            raise TransientTransportError(f"Registry returned HTTP {status} for {url}", status_code=status)
        if status >= 400:
            metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="permanent").inc()
            raise PermanentClientError(f"Registry returned HTTP {status} for {url}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="malformed").inc()
            raise PermanentClientError(f"Registry returned a non-JSON body for {url}", status_code=status) from e

        metrics.REGISTRY_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="ok").inc()
        return body
