"""
Purchase-order linking for bank transactions.

A transaction may be linked to several POs, each link carrying the part of
the transaction debit it accounts for.  Older records hold a single
linkedPOId / linkedPOName pair instead; resolve_links() presents those as a
one-entry link list on read, and apply_links() retires the legacy pair the
first time a link list is written.
"""
import logging
from typing import Optional, Sequence

from models.purchase_order import PurchaseOrder
from models.transaction import POLink, Transaction
from .allocation import (
    ALLOCATION_TOLERANCE,
    drop_incomplete,
    ensure_valid,
    new_share_id,
    percentage_of,
    recompute_percentage,
    validate_allocation_set,
)

logger = logging.getLogger(__name__)

MIGRATED_PREFIX = "migrated-"


def po_display_name(po_id: str) -> str:
    """Fallback label for a PO with no name: 'PO #' + last six id chars."""
    return f"PO #{po_id[-6:].upper()}"


def resolve_links(transaction: Transaction) -> list[POLink]:
    """
    Return the transaction's PO links in the multi-link shape.

    Links synthesised from the legacy pair get a 'migrated-<poId>' id so
    they can be told apart from links a user created.
    """
    if transaction.po_links:
        return list(transaction.po_links)

    if transaction.linked_po_id:
        po_id = transaction.linked_po_id
        return [POLink(
            id=f"{MIGRATED_PREFIX}{po_id}",
            po_id=po_id,
            po_name=transaction.linked_po_name or po_display_name(po_id),
            amount=transaction.debit_amount,
            percentage=100.0,
        )]

    return []


def with_resolved_links(transaction: Transaction) -> Transaction:
    """Copy of *transaction* with po_links populated from resolve_links()."""
    if transaction.po_links or not transaction.linked_po_id:
        return transaction
    return transaction.model_copy(update={"po_links": resolve_links(transaction)})


def needs_migration(transaction: Transaction) -> bool:
    return not transaction.po_links and bool(transaction.linked_po_id)


def is_migrated(link: POLink) -> bool:
    return link.id.startswith(MIGRATED_PREFIX)


def make_link(po: PurchaseOrder, amount: float, total: float) -> POLink:
    """Build a user-authored link to *po* for *amount* of a *total* debit."""
    return POLink(
        id=new_share_id(),
        po_id=po.id,
        po_name=po.name or po_display_name(po.id),
        amount=amount,
        percentage=percentage_of(amount, total),
    )


def prepare_links(
    transaction: Transaction,
    links: Sequence[POLink],
    require_full: bool = False,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> list[POLink]:
    """
    Clean and validate a replacement link list.

    Rows without a PO or with a zero amount are dropped silently (blank rows
    left over from editing).  Percentages are recomputed against the debit.
    Raises AllocationValidationError on OverAllocated / DuplicateTarget, and
    on Unbalanced when require_full is set.
    """
    kept = drop_incomplete(list(links))
    dropped = len(links) - len(kept)
    if dropped:
        logger.debug("Dropped %d incomplete PO link row(s) on %s", dropped, transaction.id)

    kept = [recompute_percentage(link, transaction.debit_amount) for link in kept]
    ensure_valid(validate_allocation_set(
        kept, transaction.debit_amount, require_full=require_full, tolerance=tolerance,
    ))
    return kept


def links_update(links: Sequence[POLink]) -> dict:
    """
    Partial document replacing po_links wholesale.  A non-empty list also
    nulls the legacy pair; from then on the record only uses poLinks.
    """
    update: dict = {"poLinks": [link.to_document() for link in links]}
    if links:
        update["linkedPOId"] = None
        update["linkedPOName"] = None
    return update


def apply_links(transaction: Transaction, links: Sequence[POLink]) -> Transaction:
    """Return *transaction* with its link list replaced (see links_update)."""
    update: dict = {"po_links": list(links)}
    if links:
        update["linked_po_id"] = None
        update["linked_po_name"] = None
    return transaction.model_copy(update=update)


def links_display_text(transaction: Transaction) -> str:
    """One-line summary such as 'Robot parts: $120.00; PO #A1B2C3: $30.00'."""
    links = resolve_links(transaction)
    if not links:
        return "None"
    return "; ".join(f"{link.po_name}: ${link.amount:.2f}" for link in links)


def links_count(transaction: Transaction) -> int:
    return len(resolve_links(transaction))


def linked_total(transaction: Transaction, po_id: Optional[str] = None) -> float:
    """Sum of linked amounts, optionally only those pointing at *po_id*."""
    return sum(
        link.amount for link in resolve_links(transaction)
        if po_id is None or link.po_id == po_id
    )
