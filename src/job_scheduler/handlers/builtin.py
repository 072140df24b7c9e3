import random
import uuid
from typing import Any, Dict

from job_scheduler.domain.job import utc_now
from job_scheduler.handlers.payloads import (
    CleanupPayload,
    CustomPayload,
    DataProcessingPayload,
    EmailPayload,
    PayloadKind,
)
from job_scheduler.handlers.protocol import SimulatedHandler


class EmailHandler(SimulatedHandler):
    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.EMAIL

    async def handle(self, payload: EmailPayload) -> Dict[str, Any]:
        await self.simulate(1.0)
        return {
            "type": PayloadKind.EMAIL.value,
            "recipient": payload.recipient,
            "subject": payload.subject,
            "sent_at": utc_now().isoformat(),
            "message_id": f"msg_{uuid.uuid4().hex[:12]}",
        }


class DataProcessingHandler(SimulatedHandler):
    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.DATA_PROCESSING

    async def handle(self, payload: DataProcessingPayload) -> Dict[str, Any]:
        await self.simulate(3.0 if payload.complexity == "high" else 1.0)
        return {
            "type": PayloadKind.DATA_PROCESSING.value,
            "records_processed": payload.record_count,
            "complexity": payload.complexity,
            "processed_at": utc_now().isoformat(),
            "output_location": payload.output_path,
        }


class CleanupHandler(SimulatedHandler):
    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.CLEANUP

    async def handle(self, payload: CleanupPayload) -> Dict[str, Any]:
        await self.simulate(0.8)
        return {
            "type": PayloadKind.CLEANUP.value,
            "items_deleted": payload.item_count,
            "location": payload.location,
            "freed_space": f"{random.uniform(0, 100):.2f}MB",
            "cleaned_at": utc_now().isoformat(),
        }


class CustomHandler(SimulatedHandler):
    """
    Fallback for payloads whose kind has no dedicated handler.
    """

    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.CUSTOM

    async def handle(self, payload: CustomPayload) -> Dict[str, Any]:
        await self.simulate(random.uniform(0, 2.0))
        return {
            "type": PayloadKind.CUSTOM.value,
            "action": payload.action,
            "parameters": payload.parameters,
            "executed_at": utc_now().isoformat(),
            "custom_result": "Job executed successfully",
        }
