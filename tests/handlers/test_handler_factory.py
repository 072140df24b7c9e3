import pytest
from typing import Any, Dict, Type
from pydantic import BaseModel
from job_scheduler.handlers.builtin import CustomHandler, DataProcessingHandler, EmailHandler
from job_scheduler.handlers.factory import JobHandlerFactory, default_handler_factory
from job_scheduler.handlers.payloads import CustomPayload, EmailPayload, PayloadKind
from job_scheduler.handlers.protocol import SimulatedHandler
from job_scheduler.handlers.webhook import WebhookHandler


class ShoutHandler(SimulatedHandler):
    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.EMAIL

    async def handle(self, payload: EmailPayload) -> Dict[str, Any]:
        return {"type": "email", "recipient": payload.recipient.upper()}


@pytest.fixture
def schemas() -> Dict[PayloadKind, Type[BaseModel]]:
    return {PayloadKind.EMAIL: EmailPayload, PayloadKind.CUSTOM: CustomPayload}

@pytest.fixture
def factory(schemas: Dict[PayloadKind, Type[BaseModel]]) -> JobHandlerFactory:
    return JobHandlerFactory(schemas, latency_scale=0)

def test_register_handler(factory: JobHandlerFactory) -> None:
    factory.register(ShoutHandler)
    assert PayloadKind.EMAIL in factory._handlers

def test_register_handler_unsupported_kind(factory: JobHandlerFactory) -> None:
    with pytest.raises(ValueError, match="Payload kind 'webhook' is not supported"):
        factory.register(WebhookHandler)

def test_register_handler_duplicate(factory: JobHandlerFactory) -> None:
    factory.register(ShoutHandler)
    with pytest.raises(ValueError, match="A handler for payload kind 'email' is already registered"):
        factory.register(EmailHandler)

def test_get_handler(factory: JobHandlerFactory) -> None:
    factory.register(ShoutHandler)
    handler, payload = factory.get_handler({"kind": "email", "recipient": "a@b.com"})
    assert isinstance(handler, ShoutHandler)
    assert handler.latency_scale == 0
    assert payload == EmailPayload(recipient="a@b.com")

@pytest.mark.parametrize("payload", [
    {"kind": "fax", "action": "send"},
    {"action": "send"},
    {"kind": None, "action": "send"},
])
def test_get_handler_falls_back_to_custom(factory: JobHandlerFactory, payload) -> None:
    factory.register(CustomHandler)
    handler, validated = factory.get_handler(payload)
    assert isinstance(handler, CustomHandler)
    assert validated.action == "send"

def test_get_handler_falls_back_when_kind_unregistered(factory: JobHandlerFactory) -> None:
    factory.register(CustomHandler)
    handler, _ = factory.get_handler({"kind": "email", "recipient": "a@b.com"})
    assert isinstance(handler, CustomHandler)

def test_get_handler_without_fallback(factory: JobHandlerFactory) -> None:
    with pytest.raises(KeyError, match="No handler registered for payload kind 'custom'"):
        factory.get_handler({"kind": "fax"})

def test_get_handler_invalid_payload(factory: JobHandlerFactory) -> None:
    factory.register(ShoutHandler)
    with pytest.raises(ValueError, match="Invalid payload for kind 'email'"):
        factory.get_handler({"kind": "email", "subject": "no recipient"})

def test_default_handler_factory_covers_every_kind() -> None:
    factory = default_handler_factory(latency_scale=0)
    for kind in PayloadKind:
        assert kind in factory._handlers
    handler, payload = factory.get_handler({"kind": "data_processing", "complexity": "high"})
    assert isinstance(handler, DataProcessingHandler)
    assert payload.record_count == 100

@pytest.mark.asyncio
async def test_builtin_handlers_report_their_kind() -> None:
    factory = default_handler_factory(latency_scale=0)
    for raw, expected in [
        ({"kind": "email", "recipient": "a@b.com"}, "email"),
        ({"kind": "data_processing"}, "data_processing"),
        ({"kind": "cleanup", "item_count": 3}, "cleanup"),
        ({"kind": "custom", "action": "ping"}, "custom"),
        ({"action": "ping"}, "custom"),
    ]:
        handler, payload = factory.get_handler(raw)
        result = await handler.handle(payload)
        assert result["type"] == expected

def test_only_simulated_handlers_get_a_latency_scale() -> None:
    factory = default_handler_factory(latency_scale=0.5)
    webhook, _ = factory.get_handler({"kind": "webhook", "url": "https://example.com/hook"})
    email, _ = factory.get_handler({"kind": "email", "recipient": "a@b.com"})
    assert isinstance(webhook, WebhookHandler)
    assert not hasattr(webhook, "latency_scale")
    assert email.latency_scale == 0.5
