"""Result delivery to the job's response destination."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from personacord.jobs.schemas import ApiDestination, WebhookDestination
from personacord.services.http import HttpRetryOptions, request_with_retries

if TYPE_CHECKING:
    import httpx

    from personacord.jobs.queue import AnyJob
    from personacord.jobs.schemas import JobResult

logger = logging.getLogger(__name__)

CALLBACK_HEADERS = {"Content-Type": "application/json"}


def callback_url(job: AnyJob) -> str | None:
    """Return the URL a result is posted to, or None when it is polled."""
    destination = job.response_destination
    if isinstance(destination, ApiDestination):
        return destination.callback_url
    if isinstance(destination, WebhookDestination):
        return destination.webhook_url
    return None


class CallbackDelivery:
    """Posts each result as JSON to the job's callback URL.

    Discord destinations are read back by the gateway through the result
    store, so nothing is sent for them.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        """Bind the shared HTTP client."""
        self._client = client

    async def __call__(self, job: AnyJob, result: JobResult) -> None:
        """Deliver `result` for `job`.

        Raises:
            httpx.HTTPStatusError: If the callback answers with an error status.

        """
        url = callback_url(job)
        if url is None:
            logger.debug("No callback for %s, result stays in the store", job.request_id)
            return
        payload = result.to_wire()
        response = await request_with_retries(
            lambda: self._client.post(url, json=payload, headers=CALLBACK_HEADERS),
            options=HttpRetryOptions(),
            log_context=job.request_id,
        )
        response.raise_for_status()
        logger.info(
            "Delivered %s result for %s (success=%s)",
            job.job_type,
            job.request_id,
            result.success,
        )
