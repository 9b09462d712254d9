"""Reading the reactivation list and writing the run report."""
from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .models import ReactivationRecord, RunSummary, normalize_email


logger = logging.getLogger(__name__)

EMAIL_COLUMNS = ("email", "mail", "userprincipalname", "upn", "emailaddress")
TYPE_COLUMNS = ("employeetype", "employee_type", "type")

REPORT_FIELDS = [
    "email",
    "employee_type",
    "status",
    "user_principal_name",
    "temporary_password",
    "details",
]


class RecordsError(RuntimeError):
    """Raised when the reactivation list cannot be read."""


def _match_column(fieldnames: Sequence[str], candidates: Sequence[str]) -> Optional[str]:
    lookup: Dict[str, str] = {}
    for name in fieldnames:
        if name is None:
            continue
        key = name.strip().lower().replace(" ", "")
        lookup.setdefault(key, name)
    for candidate in candidates:
        if candidate in lookup:
            return lookup[candidate]
    return None


def load_records(path: Path) -> Tuple[List[ReactivationRecord], int]:
    """Load reactivation records from a CSV file.

    Returns the usable records and the number of rows that were skipped
    (blank, malformed, or duplicate email addresses).
    """

    path = Path(path)
    if not path.exists():
        raise RecordsError(f"Reactivation list '{path}' does not exist.")

    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            fieldnames = reader.fieldnames or []
            email_column = _match_column(fieldnames, EMAIL_COLUMNS)
            if not email_column:
                raise RecordsError(
                    f"Reactivation list '{path}' has no email column "
                    f"(expected one of: {', '.join(EMAIL_COLUMNS)})."
                )
            type_column = _match_column(fieldnames, TYPE_COLUMNS)

            records: List[ReactivationRecord] = []
            seen: set[str] = set()
            skipped = 0
            # Header is line 1.
            for line_number, row in enumerate(reader, start=2):
                email = (row.get(email_column) or "").strip()
                employee_type = (row.get(type_column) or "").strip() if type_column else ""
                lookup = normalize_email(email)
                if not lookup:
                    skipped += 1
                    continue
                if "@" not in lookup:
                    logger.warning("Line %s: '%s' is not an email address, skipping.", line_number, email)
                    skipped += 1
                    continue
                if lookup in seen:
                    logger.warning("Line %s: duplicate entry for %s, skipping.", line_number, email)
                    skipped += 1
                    continue
                seen.add(lookup)
                records.append(
                    ReactivationRecord(
                        email=email,
                        employee_type=employee_type,
                        line_number=line_number,
                    )
                )
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise RecordsError(f"Unable to read reactivation list '{path}': {exc}") from exc

    logger.info("Loaded %s record(s) from %s (%s skipped).", len(records), path, skipped)
    return records, skipped


def write_report(path: Path, summary: RunSummary) -> Path:
    """Persist one row per processed account to ``path``."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        for result in summary.results:
            writer.writerow(
                {
                    "email": result.record.email,
                    "employee_type": result.record.employee_type,
                    "status": result.status,
                    "user_principal_name": result.user_principal_name or "",
                    "temporary_password": result.temporary_password or "",
                    "details": "; ".join(step.describe() for step in result.steps),
                }
            )
    return path


__all__ = ["RecordsError", "load_records", "write_report"]
