"""
Bank-statement import.

Takes rows from a bank export (already parsed into dicts, or read from a CSV
file) and records the debits as transactions.  A row is imported only if:

  - its status is "posted" (case-insensitive)
  - its debit amount parses as a number greater than zero
  - its description is non-empty
  - no transaction with the same description exists yet, in the database or
    earlier in the same batch

Everything else is counted as skipped.  Rows that pass the filter but cannot
be recorded are reported as errors.  An optional sub-organization column is
resolved against the catalog with SubOrgMatcher and becomes a single 100%
allocation.

Column names are matched case-insensitively; "Post Date", "postDate" and
"post_date" are all accepted.
"""
import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

from models.result import ImportSummary
from .allocation import single_allocation
from .database import Database
from .sub_org_matcher import SubOrgMatcher

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%d %b %Y", "%b %d, %Y")

_POST_DATE_KEYS = ("postdate", "post date", "date", "transaction date")
_DEBIT_KEYS = ("debit", "debit amount", "debitamount", "amount")
_SUB_ORG_KEYS = ("sub-organization", "sub organization", "suborganization", "sub org")


def _norm_key(key: str) -> str:
    return " ".join(str(key).strip().lower().replace("_", " ").split())


def _normalise_row(row: dict) -> dict:
    # camelCase headers ("postDate") collapse to "postdate"
    return {_norm_key(k): v for k, v in row.items() if k is not None}


def _first(row: dict, keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def _to_amount(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    cleaned = value.replace("$", "").replace(",", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_post_date(value: Optional[str]) -> str:
    """Return an ISO date; a missing value means today."""
    if not value:
        return date.today().isoformat()
    text = value.strip()
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised post date {value!r}")


def read_csv_rows(path: Path) -> list[dict]:
    """Load a bank export CSV as a list of row dicts."""
    with open(path, newline="", encoding="utf-8-sig") as f:
        return list(csv.DictReader(f))


class TransactionImporter:
    """
    Records bank-export rows as transactions.

    Usage:
        importer = TransactionImporter(db, SubOrgMatcher(sub_orgs))
        summary = importer.import_rows(rows)

    Budget figures are not touched here; the caller reconciles once the
    batch is in.
    """

    def __init__(self, db: Database, matcher: Optional[SubOrgMatcher] = None):
        self.db = db
        self.matcher = matcher

    def import_rows(self, rows: Iterable[dict]) -> ImportSummary:
        summary = ImportSummary()
        seen: set[str] = set()

        for raw in rows:
            row = _normalise_row(raw)
            description = (_first(row, ("description",)) or "").strip()

            if (_first(row, ("status",)) or "").lower() != "posted":
                summary.skipped += 1
                continue

            debit = _to_amount(_first(row, _DEBIT_KEYS))
            if debit is None or debit <= 0:
                summary.skipped += 1
                continue

            if not description:
                summary.skipped += 1
                continue

            if description in seen or self.db.transaction_exists_with_description(description):
                logger.debug("Skipping already-recorded transaction: %s", description)
                summary.skipped += 1
                continue

            try:
                document = {
                    "postDate":    parse_post_date(_first(row, _POST_DATE_KEYS)),
                    "description": description,
                    "debitAmount": debit,
                    "status":      _first(row, ("status",)),
                }
                label = _first(row, _SUB_ORG_KEYS)
                if label and self.matcher is not None:
                    org = self.matcher.match(label)
                    if org is not None:
                        document["allocations"] = [single_allocation(org, debit).to_document()]
                    else:
                        logger.warning("No sub-organization matches %r; left unallocated", label)

                txn_id = self.db.create_transaction(document)
            except Exception as exc:
                summary.errors.append(
                    f'Error processing row with description "{description}": {exc}'
                )
                continue

            seen.add(description)
            summary.created_ids.append(txn_id)
            summary.processed += 1

        logger.info(
            "Import finished: %d processed, %d skipped, %d errors",
            summary.processed, summary.skipped, len(summary.errors),
        )
        return summary
