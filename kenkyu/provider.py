"""
Research provider client - OpenAI Responses API in background mode.

submit() returns immediately with the response id; the result arrives later
by webhook or by retrieve().
"""
import os
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_API_BASE = os.environ.get("OPENAI_API_BASE", "https://api.openai.com/v1")
RESEARCH_MODEL = os.environ.get("RESEARCH_MODEL", "o3-deep-research")

SUPPORTED_PROVIDERS = ("openai",)


class ProviderError(Exception):
    """The provider call failed (network, HTTP error, unexpected body)."""


class ProviderNotConfigured(ProviderError):
    """No API key; retrying cannot help."""


class ResearchProvider:
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, api_base: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or OPENAI_API_KEY
        self.api_base = (api_base or OPENAI_API_BASE).rstrip("/")
        self.model = model or RESEARCH_MODEL

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderNotConfigured("OPENAI_API_KEY environment variable not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = self._headers()
        url = f"{self.api_base}{path}"
        try:
            resp = requests.request(method, url, headers=headers, timeout=60, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"OpenAI API request failed: {e}") from e

        if not resp.ok:
            raise ProviderError(f"OpenAI API error ({resp.status_code}): {resp.text[:500]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"OpenAI API returned invalid JSON: {e}") from e

    def submit(self, prompt: str) -> str:
        """Start a background research response. Returns the external id."""
        data = self._request("POST", "/responses", json={
            "model": self.model,
            "input": prompt,
            "background": True,
        })
        external_id = data.get("id")
        if not external_id:
            raise ProviderError("OpenAI API response has no id")
        logger.info(f"[PROVIDER] Submitted research response {external_id}")
        return external_id

    def retrieve(self, external_id: str) -> dict:
        """Fetch the current state of a response (raw Responses API object)."""
        return self._request("GET", f"/responses/{external_id}")

    def cancel(self, external_id: str) -> bool:
        """Best-effort cancellation of a background response."""
        try:
            self._request("POST", f"/responses/{external_id}/cancel")
        except ProviderError as e:
            logger.warning(f"[PROVIDER] Cancel of {external_id} failed: {e}")
            return False
        logger.info(f"[PROVIDER] Cancelled research response {external_id}")
        return True


# Global instance
provider = ResearchProvider()
