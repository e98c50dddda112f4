"""
Allocation model: distributing a monetary total across several targets.

Pure functions, no I/O.  Three share types are handled uniformly:

  TransactionAllocation  transaction debit -> sub-organization  (amount)
  POLink                 transaction debit -> purchase order     (amount)
  POOrganization         PO total          -> sub-organization  (allocated_amount)

Two editing modes exist:
  equal   amount is derived: total / N, recomputed when N or total changes
  manual  percentage is derived: amount / total * 100, recomputed when
          amount or total changes

Equal splits are not rounded to whole cents; the tolerance check applied
when a set must be fully allocated absorbs the slack.
"""
import logging
import uuid
from collections import Counter
from typing import Literal, Sequence, TypeVar, Union

from models.purchase_order import POOrganization
from models.result import AllocationIssue, ValidationResult
from models.sub_organization import SubOrganization
from models.transaction import Attribution, POLink, Transaction, TransactionAllocation
from .errors import AllocationValidationError

logger = logging.getLogger(__name__)

ALLOCATION_TOLERANCE = 0.01   # $0.01 slack when a set must sum to its total

AllocationMode = Literal["equal", "manual"]
Share = Union[TransactionAllocation, POLink, POOrganization]
S = TypeVar("S", TransactionAllocation, POLink, POOrganization)


def new_share_id() -> str:
    return uuid.uuid4().hex[:12]


def target_of(share: Share) -> str:
    """The id a share points at: po_id for PO links, sub_org_id otherwise."""
    if isinstance(share, POLink):
        return share.po_id
    return share.sub_org_id


def amount_of(share: Share) -> float:
    if isinstance(share, POOrganization):
        return share.allocated_amount
    return share.amount


def _target_name(share: Share) -> str:
    if isinstance(share, POLink):
        return share.po_name or share.po_id
    return share.sub_org_name or share.sub_org_id


def _with_amount(share: S, amount: float, percentage: float) -> S:
    field = "allocated_amount" if isinstance(share, POOrganization) else "amount"
    return share.model_copy(update={field: amount, "percentage": percentage})


# ------------------------------------------------------------------
# Arithmetic
# ------------------------------------------------------------------

def percentage_of(amount: float, total: float) -> float:
    return amount / total * 100 if total > 0 else 0.0


def amount_from_percentage(percentage: float, total: float) -> float:
    return percentage * total / 100


def recompute_percentage(target: S, total: float) -> S:
    """Return a copy of *target* whose percentage matches its amount."""
    amount = amount_of(target)
    return _with_amount(target, amount, percentage_of(amount, total))


def distribute_equally(total: float, targets: Sequence[S]) -> list[S]:
    """Give each of the N targets total / N (percentage 100 / N)."""
    if not targets:
        return []
    n = len(targets)
    amount = total / n
    percentage = 100 / n
    return [_with_amount(t, amount, percentage) for t in targets]


def rebalance(targets: Sequence[S], total: float, mode: AllocationMode = "manual") -> list[S]:
    """Recompute the derived field of every share after total or count changed."""
    if mode == "equal":
        return distribute_equally(total, targets)
    if mode != "manual":
        raise ValueError(f"Invalid allocation mode {mode!r}. Must be 'equal' or 'manual'")
    return [recompute_percentage(t, total) for t in targets]


def follow_total(
    targets: Sequence[S],
    previous_total: float,
    total: float,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> list[S]:
    """
    Carry shares over to a new parent total.

    A lone share that held the whole previous total keeps 100% of the new
    one, so it aggregates exactly like the legacy scalar attribution.  Any
    other set keeps its amounts and re-derives percentages (manual mode).
    """
    if len(targets) == 1 and abs(amount_of(targets[0]) - previous_total) <= tolerance:
        return [_with_amount(targets[0], amount_from_percentage(100.0, total), 100.0)]
    return rebalance(targets, total, "manual")


def drop_incomplete(targets: Sequence[S]) -> list[S]:
    """Remove rows that have no target or no money (blank editing rows)."""
    return [t for t in targets if target_of(t) and amount_of(t) > 0]


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def validate_allocation_set(
    allocations: Sequence[Share],
    total: float,
    require_full: bool = False,
    tolerance: float = ALLOCATION_TOLERANCE,
    total_label: str = "transaction amount",
) -> ValidationResult:
    """
    Check an allocation set against its parent total.

    OverAllocated    sum of amounts exceeds total (compared at cent precision)
    DuplicateTarget  the same sub-organization / PO appears more than once
    MissingTarget    a row has no sub-organization / PO
    Unbalanced       require_full and |sum - total| > tolerance
    """
    issues: list[AllocationIssue] = []

    for i, share in enumerate(allocations):
        if not target_of(share):
            noun = "purchase order" if isinstance(share, POLink) else "sub-organization"
            issues.append(AllocationIssue(
                kind="MissingTarget",
                description=(
                    f"Allocation row {i + 1} (${amount_of(share):,.2f}) has no {noun} selected"
                ),
            ))

    counts = Counter(target_of(s) for s in allocations if target_of(s))
    for target_id, count in counts.items():
        if count > 1:
            name = next(_target_name(s) for s in allocations if target_of(s) == target_id)
            issues.append(AllocationIssue(
                kind="DuplicateTarget",
                description=f"{name} is allocated {count} times; each target may appear once",
                target_id=target_id,
            ))

    allocated = sum(amount_of(s) for s in allocations)
    if round(allocated, 2) > round(total, 2):
        issues.append(AllocationIssue(
            kind="OverAllocated",
            description=(
                f"Total allocated ${allocated:,.2f} exceeds {total_label} ${total:,.2f}"
            ),
            allocated=allocated,
            expected=total,
        ))

    if require_full and abs(allocated - total) > tolerance:
        issues.append(AllocationIssue(
            kind="Unbalanced",
            description=(
                f"Total allocated ${allocated:,.2f} does not equal {total_label} "
                f"${total:,.2f} (difference ${total - allocated:,.2f})"
            ),
            allocated=allocated,
            expected=total,
        ))

    if issues:
        logger.debug("Allocation set rejected: %s", [i.kind for i in issues])
    return ValidationResult(issues=issues)


def ensure_valid(result: ValidationResult) -> None:
    if not result.ok:
        raise AllocationValidationError(result.issues)


# ------------------------------------------------------------------
# Transaction attribution
# ------------------------------------------------------------------

def normalize_attribution(transaction: Transaction) -> Attribution:
    """
    Return where a transaction's money goes, whichever field generation
    populated it.  An allocations list (even an empty one) wins over the
    legacy sub_org_id scalar.
    """
    if transaction.allocations is not None:
        shares = list(transaction.allocations)
    elif transaction.sub_org_id:
        shares = [TransactionAllocation(
            id=f"legacy-{transaction.sub_org_id}",
            sub_org_id=transaction.sub_org_id,
            sub_org_name=transaction.sub_org_name or "",
            amount=transaction.debit_amount,
            percentage=100.0,
        )]
    else:
        shares = []

    if not shares:
        return Attribution(kind="unallocated")
    if len(shares) == 1:
        return Attribution(kind="single", shares=shares)
    return Attribution(kind="split", shares=shares)


def single_allocation(sub_org: SubOrganization, total: float) -> TransactionAllocation:
    """The canonical non-split form: one share holding 100% of the total."""
    return TransactionAllocation(
        id=new_share_id(),
        sub_org_id=sub_org.id,
        sub_org_name=sub_org.name,
        amount=total,
        percentage=100.0,
    )


def prepare_allocations(
    transaction: Transaction,
    allocations: Sequence[TransactionAllocation],
    mode: AllocationMode = "manual",
    require_full: bool = False,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> list[TransactionAllocation]:
    """
    Normalise and validate a replacement allocation set for *transaction*.

    Raises AllocationValidationError before anything is written.
    """
    shares = rebalance(list(allocations), transaction.debit_amount, mode)
    ensure_valid(validate_allocation_set(
        shares, transaction.debit_amount, require_full=require_full, tolerance=tolerance,
    ))
    return shares


def allocations_update(allocations: Sequence[TransactionAllocation]) -> dict:
    """
    Partial document replacing the allocation list wholesale.  The legacy
    scalar pair is cleared so only one representation stays populated.
    """
    return {
        "allocations": [a.to_document() for a in allocations],
        "subOrgId": None,
        "subOrgName": None,
    }
