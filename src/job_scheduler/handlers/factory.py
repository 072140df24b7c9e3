import logging
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel

from job_scheduler.handlers.builtin import CleanupHandler, CustomHandler, DataProcessingHandler, EmailHandler
from job_scheduler.handlers.payloads import DEFAULT_SCHEMAS, PayloadKind
from job_scheduler.handlers.protocol import JobHandler, SimulatedHandler
from job_scheduler.handlers.webhook import WebhookHandler

logger = logging.getLogger(__name__)

PAYLOAD_KIND_KEY = "kind"


class JobHandlerFactory:
    """
    Factory class for creating payload handlers.
    """
    def __init__(self, schemas: Dict[PayloadKind, Type[BaseModel]], latency_scale: float = 1.0):
        self._schemas: Dict[PayloadKind, Type[BaseModel]] = schemas
        self._handlers: Dict[PayloadKind, Type[JobHandler]] = {}
        self.latency_scale: float = latency_scale

    def register(self, handler_class: Type[JobHandler]) -> None:
        """
        Register a new handler class with its supported payload kind.

        Args:
            handler_class (Type[JobHandler]): The handler class to register.
        """
        kind: PayloadKind = handler_class.supported_kind()
        if kind not in self._schemas:
            raise ValueError(f"Payload kind '{kind.value}' is not supported")
        if kind in self._handlers:
            raise ValueError(f"A handler for payload kind '{kind.value}' is already registered")
        self._handlers[kind] = handler_class

    def resolve_kind(self, payload: Dict[str, Any]) -> PayloadKind:
        """
        Read the payload's declared kind, falling back to CUSTOM when it is
        missing, unknown, or has no registered handler.
        """
        declared: Optional[str] = payload.get(PAYLOAD_KIND_KEY)
        try:
            kind = PayloadKind(declared)
        except ValueError:
            logger.info("Unrecognized payload kind %r, using the custom handler", declared)
            return PayloadKind.CUSTOM
        if kind not in self._handlers:
            logger.info("No handler registered for payload kind '%s', using the custom handler", kind.value)
            return PayloadKind.CUSTOM
        return kind

    def get_handler(self, payload: Dict[str, Any]) -> Tuple[JobHandler, BaseModel]:
        """
        Get a handler instance for the payload along with the validated payload.

        Args:
            payload (Dict[str, Any]): The raw job payload.

        Returns:
            Tuple[JobHandler, BaseModel]: The handler and the payload parsed by its schema.

        Raises:
            KeyError: If no handler is registered for the resolved kind.
            ValueError: If the payload is invalid for the resolved kind.
        """
        kind = self.resolve_kind(payload)
        if kind not in self._handlers:
            raise KeyError(f"No handler registered for payload kind '{kind.value}'")

        schema_class = self._schemas[kind]
        data = {key: value for key, value in payload.items() if key != PAYLOAD_KIND_KEY}
        try:
            validated_payload = schema_class(**data)
        except ValueError as e:
            raise ValueError(f"Invalid payload for kind '{kind.value}': {str(e)}")

        handler_class = self._handlers[kind]
        if issubclass(handler_class, SimulatedHandler):
            return handler_class(latency_scale=self.latency_scale), validated_payload
        return handler_class(), validated_payload


def default_handler_factory(latency_scale: float = 1.0) -> JobHandlerFactory:
    factory = JobHandlerFactory(dict(DEFAULT_SCHEMAS), latency_scale=latency_scale)
    for handler_class in (EmailHandler, WebhookHandler, DataProcessingHandler, CleanupHandler, CustomHandler):
        factory.register(handler_class)
    return factory
