"""CRM integration layer -- HubSpot batch endpoints behind a small interface.

- CRMClient: abstract batch-lookup / batch-create interface
- HubSpotClient: httpx implementation against HubSpot CRM v3
- field_mapping: CSV column -> deal property conversion and payload building
"""

from src.dealsync.crm.adapter import CRMClient
from src.dealsync.crm.hubspot import HubSpotClient

__all__ = [
    "CRMClient",
    "HubSpotClient",
]
