from .protocol import DequeueHandler, EnqueueOptions, TaskQueue
from .memory import InMemoryTaskQueue

__all__ = ["DequeueHandler", "EnqueueOptions", "TaskQueue", "InMemoryTaskQueue"]
