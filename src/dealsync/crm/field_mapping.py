"""CSV column to HubSpot deal property mappings.

Defines:
- DEAL_PROPERTY_MAP: Maps CSV column names to HubSpot deal property names.
- CONTACT_KEY_COLUMN: The CSV column carrying the external contact key.
- row_to_properties(): Converts a CSV row dict to HubSpot deal properties.
- parse_close_date(): Converts closedate strings to epoch milliseconds.
- to_deal_input(): Builds the batch/create input for a resolved Record.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog

from src.dealsync.sync.schemas import Record, Scalar

logger = structlog.get_logger(__name__)

CONTACT_KEY_COLUMN = "contact_id"

# Deal -> contact association, HubSpot-defined type 3.
DEAL_TO_CONTACT_ASSOCIATION = {
    "associationCategory": "HUBSPOT_DEFINED",
    "associationTypeId": 3,
}

# ── Deal Property Mappings ─────────────────────────────────────────────────
# CSV column -> HubSpot deal property. Columns not listed are ignored.

DEAL_PROPERTY_MAP: dict[str, str] = {
    "linea": "dealname",
    "concepto": "concepto",
    "region": "region",
    "microsite_calculado": "microsite_calculado",
    "provincia_homologada": "provincia_homologada",
    "ciudad_centro": "ciudad_centro",
    "centro": "centro",
    "closedate": "closedate",
    "grupo": "grupo",
    "marca": "marca",
    "equipo": "equipo",
    "genero_edad": "genero_edad",
    "agrupador_categoria": "agrupador_categoria",
    "actividad": "actividad",
    "talla__codigo_": "talla__codigo_",
    "nombre_campana": "nombre_campana",
    "amount": "amount",
    "dealstage": "dealstage",
    "pipeline": "pipeline",
}

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ── Conversion Functions ───────────────────────────────────────────────────


def parse_close_date(value: str | None) -> int | None:
    """Convert a closedate cell to epoch milliseconds (UTC).

    Numeric strings are taken as already-converted timestamps. Date-only
    values (``YYYY-MM-DD``) are pinned to 12:00 so timezone shifts in the
    CRM UI never move them to another day. Unparseable values become None.
    """
    if value is None or not value.strip():
        return None

    text = value.strip()
    if text.isdigit():
        return int(text)

    if _DATE_ONLY.match(text):
        text = f"{text} 12:00:00"

    try:
        parsed = datetime.fromisoformat(text.replace(" ", "T"))
    except ValueError:
        logger.warning("field_mapping.invalid_closedate", value=value)
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def row_to_properties(
    row: dict[str, str | None],
    property_map: dict[str, str] | None = None,
) -> dict[str, Scalar]:
    """Convert one CSV row to HubSpot deal properties.

    Empty cells become None, matching what HubSpot expects for unset
    properties. ``closedate`` is converted with parse_close_date().

    Args:
        row: CSV row keyed by column name.
        property_map: Optional custom map. Defaults to DEAL_PROPERTY_MAP.

    Returns:
        Dict of HubSpot property names to values.
    """
    if property_map is None:
        property_map = DEAL_PROPERTY_MAP

    properties: dict[str, Scalar] = {}
    for column, hubspot_name in property_map.items():
        raw = row.get(column)
        value = raw.strip() if isinstance(raw, str) else raw
        if hubspot_name == "closedate":
            properties[hubspot_name] = parse_close_date(value)
        else:
            properties[hubspot_name] = value or None
    return properties


def to_deal_input(record: Record) -> dict[str, Any]:
    """Build a batch/create input for a record with a resolved contact.

    Raises:
        ValueError: If the record has no resolved_target_id.
    """
    if not record.resolved_target_id:
        msg = f"record {record.source_index} has no resolved contact"
        raise ValueError(msg)

    return {
        "properties": dict(record.fields),
        "associations": [
            {
                "types": [dict(DEAL_TO_CONTACT_ASSOCIATION)],
                "to": {"id": record.resolved_target_id},
            }
        ],
    }
