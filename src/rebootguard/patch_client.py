"""HTTP client for the patch-management backend."""

from __future__ import annotations

import httpx
from loguru import logger

from rebootguard.models import NotifierConfig
from rebootguard.secrets import ObfuscationError, xor_decode

ONGOING_PATCH_TASK_PATH = "/patch_management/fetch_ongoing_patch_task"
DEFAULT_TIMEOUT = 30.0


class PatchTaskClient:
    """Asks the backend whether a patch job is running on this asset.

    Every failure resolves to "not running": an unreachable backend must not
    hold a reboot back forever.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use a mock transport)
        """
        self.timeout = timeout
        self._transport = transport

    def _headers(self, config: NotifierConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.identifier:
            token = xor_decode(config.identifier)
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def is_patch_task_running(self, config: NotifierConfig) -> bool:
        """Check whether a patch task is in progress for the configured asset."""
        if not config.base_url or not config.asset or not config.asset_type:
            logger.debug("Missing base_url/asset/asset_type, skipping patch task check")
            return False

        url = config.base_url.rstrip("/") + ONGOING_PATCH_TASK_PATH
        payload = {"asset": config.asset, "asset_type": config.asset_type}

        try:
            headers = self._headers(config)
        except ObfuscationError as e:
            logger.error(f"Patch task check failed: {e}")
            return False

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"Patch task check failed: timeout after {self.timeout}s ({url})")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Patch task check failed: request error: {e}")
            return False
        except (httpx.InvalidURL, ValueError) as e:
            logger.error(f"Patch task check failed: cannot build request for {url}: {e}")
            return False

        if response.status_code != 200:
            logger.error(f"Patch task check failed: API returned status {response.status_code}")
            return False

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Patch task check failed: invalid JSON body: {e}")
            return False

        if not isinstance(body, dict) or not isinstance(body.get("running_patch_status"), bool):
            logger.error(f"Patch task check failed: unexpected body {body!r}")
            return False

        running = body["running_patch_status"]
        logger.debug(f"Patch task running: {running}")
        return running
