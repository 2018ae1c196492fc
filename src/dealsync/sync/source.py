"""CSV source adapter: one bucket object -> a ParsedFile of Records.

Files are ``;``-separated with a header row. Rows without a contact key are
data-quality rejects: they never enter the pipeline and are reported
separately from upload failures. Record indexes count valid records only,
so resume offsets are stable as long as the file is unchanged.
"""

from __future__ import annotations

import csv
import io

import chardet
import structlog

from src.dealsync.core.errors import ObjectStoreError
from src.dealsync.crm.field_mapping import CONTACT_KEY_COLUMN, row_to_properties
from src.dealsync.storage.object_store import ObjectStore
from src.dealsync.sync.schemas import ParsedFile, Record

logger = structlog.get_logger(__name__)


def _decode_content(raw: bytes, source_key: str) -> str:
    """Decode file bytes: UTF-8 (with or without BOM) first, chardet otherwise."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        detected = chardet.detect(raw)
        encoding = detected.get("encoding") or "utf-8"
        logger.info(
            "source.encoding_detected",
            source_key=source_key,
            encoding=encoding,
            confidence=detected.get("confidence"),
        )
        return raw.decode(encoding, errors="replace")


# Log the first few rejects individually, then only a count.
_REJECT_LOG_LIMIT = 3


def parse_deals_csv(content: str, source_key: str, delimiter: str = ";") -> ParsedFile:
    """Parse CSV text into a ParsedFile.

    Args:
        content: Decoded file content.
        source_key: Key of the file, carried into the result.
        delimiter: Column separator.

    Returns:
        ParsedFile with valid records in file order.
    """
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")), delimiter=delimiter)
    if reader.fieldnames:
        reader.fieldnames = [name.strip() for name in reader.fieldnames]

    records: list[Record] = []
    rejected = 0
    total_rows = 0

    for line_number, row in enumerate(reader, start=2):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        total_rows += 1
        contact_key = (row.get(CONTACT_KEY_COLUMN) or "").strip()
        if not contact_key:
            rejected += 1
            if rejected <= _REJECT_LOG_LIMIT:
                logger.warning(
                    "source.row_without_contact",
                    source_key=source_key,
                    line=line_number,
                    deal=row.get("linea") or None,
                )
            continue

        records.append(
            Record(
                source_index=len(records),
                contact_key=contact_key,
                fields=row_to_properties(row),
            )
        )

    if rejected > _REJECT_LOG_LIMIT:
        logger.warning(
            "source.rows_without_contact",
            source_key=source_key,
            rejected=rejected,
        )

    logger.info(
        "source.parsed",
        source_key=source_key,
        rows=total_rows,
        valid=len(records),
        rejected=rejected,
    )
    return ParsedFile(
        source_key=source_key,
        records=records,
        rejected=rejected,
        total_rows=total_rows,
    )


async def fetch_deals(source: ObjectStore, source_key: str, delimiter: str = ";") -> ParsedFile:
    """Download and parse one source file.

    Raises:
        ObjectStoreError: If the object is missing or cannot be read.
    """
    raw = await source.get(source_key)
    if raw is None:
        raise ObjectStoreError("get", source_key, "object not found")
    return parse_deals_csv(_decode_content(raw, source_key), source_key, delimiter)
