from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class PayloadKind(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    DATA_PROCESSING = "data_processing"
    CLEANUP = "cleanup"
    CUSTOM = "custom"


class EmailPayload(BaseModel):
    recipient: str = Field(..., description="Address the message is sent to")
    subject: Optional[str] = Field(None, description="Message subject")
    body: Optional[str] = Field(None, description="Message body")


class WebhookPayload(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field(default="POST", description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Dict[str, Any] = Field(default={}, description="Optional body payload for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")
    timeout: float = Field(default=30.0, gt=0, description="Seconds before the request is abandoned")


class DataProcessingPayload(BaseModel):
    record_count: int = Field(default=100, ge=0)
    complexity: Literal["low", "medium", "high"] = "medium"
    output_path: str = "/tmp/processed_data"


class CleanupPayload(BaseModel):
    item_count: int = Field(default=50, ge=0)
    location: str = "/tmp/cleanup"


class CustomPayload(BaseModel):
    action: str = "unknown"
    parameters: Dict[str, Any] = Field(default_factory=dict)


DEFAULT_SCHEMAS = {
    PayloadKind.EMAIL: EmailPayload,
    PayloadKind.WEBHOOK: WebhookPayload,
    PayloadKind.DATA_PROCESSING: DataProcessingPayload,
    PayloadKind.CLEANUP: CleanupPayload,
    PayloadKind.CUSTOM: CustomPayload,
}
