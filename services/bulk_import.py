"""
Bulk import of already-paid registrations

Rows come from an offline-reconciled CSV export. Their payment_id is trusted as
captured without a gateway signature, so this channel must only be exposed to
operators. Each row is processed independently; a failing row is recorded and
the import moves on.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Iterable

from admin_alerts import send_warning_alert
from payment_validation import ValidationError, find_missing_fields, validate_email
from pricing_utils import from_minor_units
from services.registration_drafts import parse_bool

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('name', 'email', 'phone', 'school', 'grade', 'section', 'payment_id', 'is_overseas')
REQUIRED_ROW_FIELDS = ('name', 'email', 'phone', 'school', 'grade', 'section', 'payment_id')

BULK_PAYMENT_METHOD = 'bulk_upload'

# Data rows start on line 2 of the file, after the header
HEADER_OFFSET = 2


class RowError(Exception):
    """A single bulk row could not be imported"""
    pass


@dataclass
class BulkImportResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def record_failure(self, row_number: int, email: Optional[str], error: str):
        self.failed += 1
        self.errors.append({'row': row_number, 'email': email or 'N/A', 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'successful': self.successful,
            'failed': self.failed,
            'errors': list(self.errors)
        }


def parse_csv_rows(csv_text: str) -> List[Dict[str, str]]:
    """
    Parse CSV text into trimmed row dicts, skipping blank lines

    Raises:
        ValidationError: Empty input or a required column missing from the header
    """
    if not csv_text or not csv_text.strip():
        raise ValidationError("CSV file is empty or invalid.")

    reader = csv.DictReader(io.StringIO(csv_text.lstrip('\ufeff')))
    header = [name.strip() for name in (reader.fieldnames or [])]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ValidationError(f"Missing required columns in CSV: {', '.join(missing)}")

    rows = []
    for raw in reader:
        row = {
            (key or '').strip(): (value.strip() if isinstance(value, str) else '')
            for key, value in raw.items()
            if key is not None
        }
        if not any(row.values()):
            continue
        rows.append(row)

    if not rows:
        raise ValidationError("CSV file is empty or invalid.")
    return rows


def row_to_contact(row: Dict[str, str]) -> Dict[str, Any]:
    """Map a validated CSV row onto registration contact fields"""
    missing = find_missing_fields(row, REQUIRED_ROW_FIELDS)
    if missing:
        raise RowError(f"Missing required fields in row: {', '.join(missing)}")

    try:
        email = validate_email(row['email'])
    except ValidationError as e:
        raise RowError(str(e))

    return {
        'name': row['name'],
        'email': email,
        'phone': row['phone'],
        'school_name': row['school'],
        'grade': row['grade'],
        'section': row['section'],
        'dob': row.get('dob') or None,
        'city': row.get('city') or None,
        'is_overseas': parse_bool(row.get('is_overseas'))
    }


def row_to_addon(row: Dict[str, str]) -> Optional[Dict[str, Any]]:
    addon_id = row.get('addon_id')
    if not addon_id:
        return None
    return {'id': addon_id, 'title': row.get('addon_title') or addon_id}


class BulkImportProcessor:
    """Replays post-payment fulfillment for each already-paid row"""

    def __init__(self, store, orchestrator):
        self.store = store
        self.orchestrator = orchestrator

    async def import_csv(self, csv_text: str) -> BulkImportResult:
        """Parse CSV text and import every row"""
        return await self.import_rows(parse_csv_rows(csv_text))

    async def import_rows(self, rows: Iterable[Dict[str, str]]) -> BulkImportResult:
        rows = list(rows)
        result = BulkImportResult(total=len(rows))
        logger.info(f"📦 BULK: Importing {result.total} rows")

        for index, row in enumerate(rows):
            row_number = index + HEADER_OFFSET
            try:
                await self._import_row(row)
                result.successful += 1
            except Exception as e:
                logger.error(f"❌ BULK: Row {row_number} ({row.get('email') or 'N/A'}) failed: {e}")
                result.record_failure(row_number, row.get('email'), str(e) or 'Unknown error occurred')

        logger.info(f"✅ BULK: Completed - {result.successful} successful, {result.failed} failed")
        if result.failed:
            await send_warning_alert(
                "BulkImportProcessor",
                f"Bulk import finished with {result.failed} failed rows",
                "bulk_import",
                {'total': result.total, 'failed': result.failed}
            )
        return result

    async def _import_row(self, row: Dict[str, str]):
        contact = row_to_contact(row)
        addon = row_to_addon(row)

        existing = await self.store.find_by_email(contact['email'])
        if existing and existing[0].is_completed and existing[0].payment_id == row['payment_id']:
            logger.info(f"🚫 BULK: {contact['email']} already imported with payment {row['payment_id']}, skipped")
            return

        registration = await self.store.upsert_completed(
            contact,
            addon,
            payment_id=row['payment_id'],
            payment_method=BULK_PAYMENT_METHOD,
            paid_at=datetime.now(timezone.utc)
        )
        if registration is None or not registration.is_completed:
            raise RowError("Registration could not be stored as completed")

        amount_paid = float(from_minor_units(registration.order_amount))
        await self.orchestrator.fulfill(registration, amount_paid=amount_paid)
