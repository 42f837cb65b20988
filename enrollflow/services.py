"""Boundary contracts for collaborators the engine does not own."""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import BaseModel

from .contracts import Channel, Contact


class MessageTemplate(BaseModel):
    id: str
    body: str
    subject: Optional[str] = None


class OutboundMessage(BaseModel):
    contact_id: str
    channel: Channel
    to: str
    body: str
    subject: Optional[str] = None
    template_id: Optional[str] = None
    from_identity_id: Optional[str] = None
    workflow_execution_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class SentMessage(BaseModel):
    id: str
    status: str = "sent"
    provider_id: Optional[str] = None


class ContactStore(Protocol):
    async def get_contact_with_relations(self, contact_id: str) -> Optional[Contact]:
        """Return the contact with tags and custom fields, or None."""

    async def update_contact_status(self, contact_id: str, status: str) -> None:
        """Persist a new contact status."""


class TemplateStore(Protocol):
    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        """Return the template or None when it does not exist."""


class MessageSender(Protocol):
    async def send_message(self, message: OutboundMessage) -> SentMessage:
        """Send synchronously.

        Raises:
            MessageSendError: provider failure, with its ``retryable`` flag.
        """


@dataclass
class Services:
    """External collaborators injected into node processors."""

    contacts: ContactStore
    templates: TemplateStore
    messages: MessageSender


def load_services(factory_path: str) -> Services:
    """Build collaborators from a ``module:callable`` factory reference."""
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(
            f"Invalid services factory {factory_path!r}; expected 'module:callable'"
        )
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    services = factory()
    if not isinstance(services, Services):
        raise TypeError(f"{factory_path} returned {type(services).__name__}, not Services")
    return services
