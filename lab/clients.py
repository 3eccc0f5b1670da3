"""
HTTP clients used by lab sessions.

- ShareClient posts both buffers to a share service and builds the viewable
  ``<origin>/l/<id>`` URL from the identifier it returns.
- RemoteNormaliser posts raw config text to a ``/normalise`` endpoint; it is
  the HTTP binding of the engine adapter's normalise operation.

Neither client retries: a failed call is reported once and the user issues
the action again.
"""

from typing import Optional

import httpx

from .errors import TransportError
from .result import Err, Ok, Result
from .shared.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


def _join(origin: str, path: str) -> str:
    return origin.rstrip("/") + path


class ShareClient:
    """Client of the share service.

    Args:
        origin: Scheme and host of the share service, e.g. ``https://lab.example``.
        transport: Optional httpx transport (in-process app, mock in tests).
        public_origin: Origin used to build the returned URL, when it differs
            from the address the service is reached at.
    """

    def __init__(
        self,
        origin: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
        public_origin: Optional[str] = None,
    ):
        self.origin = origin
        self.public_origin = public_origin or origin
        self._transport = transport
        self._timeout = timeout

    def share_url(self, share_id: str) -> str:
        return _join(self.public_origin, f"/l/{share_id}")

    async def share(self, input_text: str, config: str) -> Result[str]:
        """Store ``(input, config)`` remotely and return its viewable URL."""
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    _join(self.origin, "/share"),
                    json={"input": input_text, "config": config},
                )
        except httpx.HTTPError as e:
            logger.warning("Share request failed: %s", e)
            return Err(TransportError(f"failed to save state: {e}"))

        if response.status_code != 200:
            logger.warning("Share request returned status %d", response.status_code)
            return Err(
                TransportError(
                    f"Request failed with status: {response.status_code}",
                    status_code=response.status_code,
                )
            )
        share_id = response.text.strip()
        if not share_id:
            return Err(TransportError("share service returned an empty identifier", status_code=200))
        return Ok(self.share_url(share_id))


class RemoteNormaliser:
    """Normalises config text through an HTTP ``/normalise`` endpoint."""

    def __init__(
        self,
        origin: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.origin = origin
        self._transport = transport
        self._timeout = timeout

    async def normalise(self, config: str) -> Result[str]:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    _join(self.origin, "/normalise"),
                    content=config.encode("utf-8"),
                    headers={"Content-Type": "text/plain; charset=utf-8"},
                )
        except httpx.HTTPError as e:
            logger.warning("Normalise request failed: %s", e)
            return Err(TransportError(f"failed to normalise config: {e}"))

        if response.status_code != 200:
            detail = response.text.strip()
            return Err(
                TransportError(
                    f"failed to normalise config: status {response.status_code}"
                    + (f": {detail}" if detail else ""),
                    status_code=response.status_code,
                )
            )
        return Ok(response.text)
