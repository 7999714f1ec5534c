"""Client for interacting with the Exa neural search API."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx


class ExaError(RuntimeError):
    """Base error for Exa client failures."""

    def __init__(self, message: str, code: str = "EXA_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ExaRateLimitError(ExaError):
    """Raised when Exa responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Exa") -> None:
        super().__init__(message, code="EXA_429")


class ExaTimeoutError(ExaError):
    """Raised when Exa request times out."""

    def __init__(self, message: str = "Exa request timed out") -> None:
        super().__init__(message, code="EXA_TIMEOUT")


class ExaSchemaError(ExaError):
    """Raised when Exa response schema is not as expected."""

    def __init__(self, message: str = "Unexpected Exa response schema") -> None:
        super().__init__(message, code="EXA_SCHEMA_ERR")


class ExaClient:
    """Minimal Exa API client covering `/search` and `/contents`."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.exa.ai",
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("EXA_API_KEY is required to create an ExaClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def search(
        self,
        *,
        query: str,
        num_results: int,
        include_domains: Sequence[str] = (),
        exclude_domains: Sequence[str] = (),
        start_crawl_date: str | None = None,
        end_crawl_date: str | None = None,
        use_autoprompt: bool = True,
    ) -> list[dict[str, Any]]:
        """Run a neural search and return the raw result objects."""
        if num_results <= 0:
            raise ValueError("num_results must be a positive integer.")

        payload: dict[str, Any] = {
            "query": query,
            "type": "neural",
            "numResults": num_results,
            "useAutoprompt": use_autoprompt,
            "contents": {"text": True, "html": True},
        }
        if include_domains:
            payload["includeDomains"] = list(include_domains)
        if exclude_domains:
            payload["excludeDomains"] = list(exclude_domains)
        if start_crawl_date:
            payload["startCrawlDate"] = start_crawl_date
        if end_crawl_date:
            payload["endCrawlDate"] = end_crawl_date
        return self._post_results("/search", payload)

    def get_contents(self, urls: Sequence[str]) -> list[dict[str, Any]]:
        """Fetch full text and HTML for the given URLs."""
        payload = {"urls": list(urls), "text": True, "html": True}
        return self._post_results("/contents", payload)

    def _post_results(self, path: str, payload: dict[str, Any]) -> list[dict[str, Any]]:
        headers = {"X-API-KEY": self._api_key}
        try:
            response = self._http.post(path, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExaTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise ExaError(f"HTTP error calling Exa: {exc}") from exc

        if response.status_code == 429:
            raise ExaRateLimitError()

        if response.status_code in (408, 504):
            raise ExaTimeoutError()

        if response.status_code >= 400:
            detail: str | None = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = body.get("message") or body.get("error") or body.get("detail")
            except ValueError:
                detail = response.text[:200]
            message = f"Exa request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            raise ExaError(
                message,
                code=response.headers.get("x-exa-error-code", "EXA_ERROR"),
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ExaSchemaError("Failed to decode Exa response JSON.") from exc
        if not isinstance(data, dict):
            raise ExaSchemaError("Exa response must be a JSON object.")

        results = data.get("results")
        if results is None:
            return []
        if not isinstance(results, list):
            raise ExaSchemaError("`results` in Exa response must be a list.")
        if not all(isinstance(entry, dict) for entry in results):
            raise ExaSchemaError("Entries in `results` must be JSON objects.")
        return results

    def __enter__(self) -> "ExaClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
