from typing import Any, Dict

import aiohttp

from job_scheduler.domain.job import utc_now
from job_scheduler.handlers.payloads import PayloadKind, WebhookPayload


class WebhookHandler:
    """
    Payload handler that makes an HTTP request using aiohttp.

    Responses with a status of 400 or above raise
    ``aiohttp.ClientResponseError`` so the job is recorded as failed.
    """

    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.WEBHOOK

    async def handle(self, payload: WebhookPayload) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=payload.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method=payload.method,
                url=payload.url,
                headers=payload.headers,
                params=payload.params,
                json=payload.body or None,
                raise_for_status=True,
            ) as response:
                return {
                    "type": PayloadKind.WEBHOOK.value,
                    "url": payload.url,
                    "method": payload.method.upper(),
                    "status": response.status,
                    "headers": dict(response.headers),
                    "body": await response.text(),
                    "called_at": utc_now().isoformat(),
                }
