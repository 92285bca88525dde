"""Generation backend used by the worker.

Content production is opaque to this service: a generator takes a shop, a
job type and options and returns a small summary (item counts). By default
jobs are posted to the content service at GENERATION_SERVICE_URL; tests and
local runs register in-process generators instead.
"""

from typing import Any, Callable, Dict, Optional
import logging

import httpx

from backend.core.config import settings
from backend.features.shops.service import get_access_token


logger = logging.getLogger("aiseo")

Generator = Callable[[str, str, Dict[str, Any]], Dict[str, Any]]

_generators: Dict[str, Generator] = {}


class GenerationError(Exception):
    """Raised when the content service could not produce the content."""


def register_generator(job_type: str, generator: Generator) -> None:
    _generators[job_type] = generator


def unregister_generator(job_type: str) -> None:
    _generators.pop(job_type, None)


class HttpGenerationBackend:
    """Posts a job to the content service and waits for its summary.

    Without an injected client each call opens and closes its own.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.GENERATION_SERVICE_URL or "").rstrip("/")
        self.timeout = timeout or settings.GENERATION_TIMEOUT_SECONDS
        self.client = client

    def __call__(self, shop: str, job_type: str, options: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise GenerationError("GENERATION_SERVICE_URL is not configured")
        if self.client is not None:
            return self._post(self.client, shop, job_type, options)
        with httpx.Client(timeout=self.timeout) as client:
            return self._post(client, shop, job_type, options)

    def _post(self, client: httpx.Client, shop: str, job_type: str, options: Dict[str, Any]) -> Dict[str, Any]:
        headers = {}
        token = get_access_token(shop)
        if token:
            headers["X-Shopify-Access-Token"] = token
        try:
            response = client.post(
                f"{self.base_url}/generate/{job_type}",
                json={"shop": shop, "options": options},
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GenerationError(f"Content service request failed: {e}") from e
        body = response.json()
        if not isinstance(body, dict):
            raise GenerationError("Content service returned an unexpected payload")
        return body.get("summary") or {}


def get_generator(job_type: str) -> Generator:
    generator = _generators.get(job_type)
    if generator is not None:
        return generator
    return HttpGenerationBackend()
