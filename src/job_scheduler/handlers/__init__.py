from .payloads import PayloadKind
from .protocol import JobHandler
from .factory import JobHandlerFactory, default_handler_factory

__all__ = ["PayloadKind", "JobHandler", "JobHandlerFactory", "default_handler_factory"]
