"""Read-only access to the upstream version manifest over HTTP."""
from __future__ import annotations

import json
import logging
import time

import httpx

from ..config import RemoteConfig
from ..errors import MalformedResponseError, UpstreamUnavailableError
from ..models import Manifest, ManifestFormatError

LOGGER = logging.getLogger(__name__)


class RemoteVersionSource:
    """Fetch the upstream ``manifests.json``.

    Parameters
    ----------
    config:
        Remote endpoint settings (URL, bearer token, timeout, cache busting).
    client:
        Optional pre-built :class:`httpx.Client`; tests inject one backed by
        :class:`httpx.MockTransport`. When omitted a client is created per
        request and closed afterwards.
    """

    def __init__(self, config: RemoteConfig, *, client: httpx.Client | None = None) -> None:
        """Store the endpoint settings and optional client."""
        self.config = config
        self._client = client

    def fetch_manifest(self) -> Manifest:
        """Return the remote manifest, bypassing intermediate caches."""
        url = self.config.manifest_url
        if not url:
            raise UpstreamUnavailableError(
                "Remote manifest URL is not configured (remote.manifest_url)."
            )

        params: dict[str, str] = {}
        headers = {"Accept": "application/json"}
        if self.config.cache_bust:
            params["_"] = str(int(time.time() * 1000))
            headers["Cache-Control"] = "no-cache"
            headers["Pragma"] = "no-cache"
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"

        try:
            response = self._get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError(
                f"Timed out after {self.config.timeout:g}s fetching remote manifest."
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Failed to fetch remote manifest: {exc}") from exc

        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Remote manifest request failed with HTTP {response.status_code}."
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise MalformedResponseError("Remote manifest is not valid JSON.") from exc
        try:
            manifest = Manifest.from_dict(payload)
        except ManifestFormatError as exc:
            raise MalformedResponseError(f"Remote manifest is malformed: {exc}") from exc
        LOGGER.debug("Fetched remote manifest (latest=%s)", manifest.latest)
        return manifest

    def _get(
        self,
        url: str,
        *,
        params: dict[str, str],
        headers: dict[str, str],
    ) -> httpx.Response:
        timeout = httpx.Timeout(self.config.timeout)
        if self._client is not None:
            return self._client.get(url, params=params, headers=headers, timeout=timeout)
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            return client.get(url, params=params, headers=headers)


__all__ = ["RemoteVersionSource"]
