import asyncio
from typing import Any, Dict, Protocol

from pydantic import BaseModel

from job_scheduler.handlers.payloads import PayloadKind


class JobHandler(Protocol):
    """
    Protocol class for payload handlers.

    A handler sees only the validated payload, never the job record, and
    either returns a JSON-serializable result or raises.
    """

    async def handle(self, payload: BaseModel) -> Dict[str, Any]:
        """
        Run the work described by ``payload``.

        Args:
            payload (BaseModel): The payload, validated against the kind's schema.
        """
        ...

    @staticmethod
    def supported_kind() -> PayloadKind:
        """
        Return the payload kind this handler supports.
        """
        ...


class SimulatedHandler:
    """
    Base for handlers that stand in for real work by sleeping.
    """

    def __init__(self, latency_scale: float = 1.0):
        self.latency_scale: float = latency_scale

    async def simulate(self, seconds: float) -> None:
        if self.latency_scale > 0:
            await asyncio.sleep(seconds * self.latency_scale)
