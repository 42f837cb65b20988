"""Node processor registry.

Each node type maps to one async handler ``(node, context) -> result``.
Adding a node type is a registration, not a subclass.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Optional

from ..contracts import NodeProcessorContext, NodeProcessorResult

NodeProcessor = Callable[[object, NodeProcessorContext], Awaitable[NodeProcessorResult]]

REGISTRY: Dict[str, NodeProcessor] = {}


def register(node_type: str) -> Callable[[NodeProcessor], NodeProcessor]:
    """Register the decorated function as the handler for ``node_type``."""

    def decorator(func: NodeProcessor) -> NodeProcessor:
        if node_type in REGISTRY:
            raise ValueError(f"Processor already registered for {node_type}")
        REGISTRY[node_type] = func
        return func

    return decorator


def get_processor(node_type: str) -> Optional[NodeProcessor]:
    return REGISTRY.get(node_type)


# Handlers register themselves on import.
from . import contact, flow, messaging, subworkflow  # noqa: E402,F401

__all__ = ["NodeProcessor", "REGISTRY", "register", "get_processor"]
