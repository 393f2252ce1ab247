"""HTTP upload of batches to the ingestion service."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from herotrack.shared.errors import AuthorizationError, TransientNetworkError, ValidationError
from herotrack.shared.models import Batch

logger = logging.getLogger(__name__)

SCOPE_HEADER = "X-Classroom-Scope"

# Client errors that mean "this content will never be accepted"
REJECTION_STATUSES = frozenset({400, 413, 422})


@dataclass(frozen=True)
class UploadResult:
    """Server acknowledgment of a batch."""
    batch_id: str
    duplicate: bool = False
    events_persisted: int = 0


class HttpBatchTransport:
    """Posts batches to ``POST /v1/batches``.

    Any answer other than an acknowledgment, a content rejection or a
    scope denial is reported as TransientNetworkError so the coordinator
    retries.
    """

    def __init__(
        self,
        base_url: str,
        scope_token: str,
        timeout_seconds: float = 20.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = f"{base_url.rstrip('/')}/v1/batches"
        self.scope_token = scope_token
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def send(self, batch: Batch) -> UploadResult:
        """Upload one batch and wait for the server's answer.

        Raises:
            ValidationError: The server rejected the content
            AuthorizationError: The scope token does not cover the
                batch's classroom
            TransientNetworkError: Timeout, connectivity loss or a
                retryable status
        """
        session = await self._get_session()
        try:
            async with session.post(
                self.endpoint,
                json=batch.to_payload(),
                headers={SCOPE_HEADER: self.scope_token},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                status = response.status
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Upload of {batch.batch_id} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Upload of {batch.batch_id} failed: {e}") from e

        if not isinstance(body, dict):
            body = {}

        if 200 <= status < 300 and body.get("status") == "accepted":
            return UploadResult(
                batch_id=batch.batch_id,
                duplicate=bool(body.get("duplicate", False)),
                events_persisted=int(body.get("events_persisted") or 0),
            )

        if status in REJECTION_STATUSES:
            reason = body.get("reason")
            if reason not in ValidationError.REASONS:
                reason = ValidationError.MALFORMED
            raise ValidationError(
                reason,
                body.get("message", f"Batch rejected with HTTP {status}"),
                event_id=body.get("event_id"),
            )

        if status == 403 and body.get("error") == AuthorizationError.code:
            raise AuthorizationError(
                body.get("message", f"Scope denied for batch {batch.batch_id}")
            )

        logger.warning(
            "UPLOAD_UNEXPECTED_RESPONSE",
            extra={"batch_id": batch.batch_id, "status": status}
        )
        raise TransientNetworkError(f"HTTP {status} for batch {batch.batch_id}", status=status)
