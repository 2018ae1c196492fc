"""CRM client abstract base class -- the two batch operations the engine needs.

The engine never talks HTTP directly: the ContactResolver calls
``batch_read_contacts`` and the BatchUploader calls ``batch_create_deals``.
HubSpotClient is the production implementation; tests use AsyncMock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any


class CRMClient(ABC):
    """Abstract interface for the CRM batch operations.

    Methods:
        batch_read_contacts: Resolve external contact keys to CRM ids.
        batch_create_deals: Create a batch of deals, return the created count.

    Both raise CRMRequestError on a non-success response and let transport
    errors (httpx.HTTPError) propagate; callers decide how to degrade.
    """

    @abstractmethod
    async def batch_read_contacts(self, contact_keys: Sequence[str]) -> dict[str, str]:
        """Return {contact_key: crm_id} for the keys the CRM knows."""
        ...

    @abstractmethod
    async def batch_create_deals(self, inputs: Sequence[dict[str, Any]]) -> int:
        """Create deals from API-shaped inputs, return how many were created."""
        ...
