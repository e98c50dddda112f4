#!/usr/bin/env python3
"""
Budget Ledger CLI entry point.

Usage examples:
  python main.py init                               # Create the database, seed sub-organizations
  python main.py init --catalog sub_orgs.json       # Seed from a custom catalog
  python main.py budgets                            # Allocated / spent / remaining per sub-org
  python main.py set-budget "Outreach" 9000         # Change a sub-organization's allocation
  python main.py import statement.csv               # Record posted debits from a bank export
  python main.py reconcile                          # Recompute every budget_spent figure
  python main.py stats                              # Dashboard figures as JSON

  python main.py --db /tmp/ledger.db budgets        # Use another database file
"""
import json
import logging
import sys
from pathlib import Path

import click

from config import Config
from dashboard.services import dashboard_stats
from ledger import BudgetTracker, LedgerError, ReconciliationFailure, SubOrgMatcher
from ledger.importer import read_csv_rows


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _tracker(ctx: click.Context) -> BudgetTracker:
    config = Config()
    if ctx.obj.get("db"):
        config.db_path = Path(ctx.obj["db"])
    return BudgetTracker(config)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--db", default=None, type=click.Path(dir_okay=False), help="Path to the ledger database")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db: str | None) -> None:
    """Budget Ledger: bank transactions against sub-organization budgets."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["db"] = db
    _setup_logging(verbose)


# --------------------------------------------------------------------
# init command
# --------------------------------------------------------------------

@cli.command()
@click.option("--catalog", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON list of {name, budgetAllocated} entries")
@click.pass_context
def init(ctx: click.Context, catalog: str | None) -> None:
    """Create the database and seed the sub-organization catalog if empty."""
    tracker = _tracker(ctx)
    entries = None
    if catalog:
        with open(catalog, encoding="utf-8") as f:
            entries = json.load(f)

    created = tracker.seed_sub_organizations(entries)
    click.echo(f"\n  Database:  {tracker.config.db_path}")
    if created:
        click.echo(f"  ✓ Seeded {created} sub-organizations\n")
    else:
        click.echo("  Sub-organizations already present; nothing seeded\n")


# --------------------------------------------------------------------
# budgets command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def budgets(ctx: click.Context) -> None:
    """Show allocated, spent, and remaining budget per sub-organization."""
    sub_orgs = _tracker(ctx).list_sub_organizations()
    if not sub_orgs:
        click.echo("No sub-organizations. Run 'python main.py init' first.")
        return

    click.echo()
    click.echo(f"  {'Sub-organization':<22} {'Allocated':>12} {'Spent':>12} {'Remaining':>12} {'Used':>7}")
    for org in sub_orgs:
        flag = " ⚠" if org.budget_remaining < 0 else ""
        click.echo(
            f"  {org.name:<22} {org.budget_allocated:>12,.2f} {org.budget_spent:>12,.2f} "
            f"{org.budget_remaining:>12,.2f} {org.percent_used:>6.1f}%{flag}"
        )
    click.echo()


# --------------------------------------------------------------------
# set-budget command
# --------------------------------------------------------------------

@cli.command("set-budget")
@click.argument("sub_org")
@click.argument("amount", type=float)
@click.pass_context
def set_budget(ctx: click.Context, sub_org: str, amount: float) -> None:
    """Set the allocated budget of SUB_ORG (id or name) to AMOUNT."""
    tracker = _tracker(ctx)
    sub_orgs = tracker.list_sub_organizations()
    org = next((o for o in sub_orgs if o.id == sub_org), None)
    if org is None:
        org = SubOrgMatcher(sub_orgs, threshold=tracker.config.sub_org_fuzzy_threshold).match(sub_org)
    if org is None:
        click.echo(f"Error: no sub-organization matches '{sub_org}'.", err=True)
        sys.exit(1)

    try:
        updated = tracker.set_budget_allocated(org.id, amount, actor="cli")
    except (LedgerError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"  ✓ {updated.name}: allocated {updated.budget_allocated:,.2f}")


# --------------------------------------------------------------------
# import command
# --------------------------------------------------------------------

@cli.command("import")
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_transactions(ctx: click.Context, csv_file: str) -> None:
    """
    Record the posted debits of a bank-export CSV as transactions.

    \b
    Expected columns (case-insensitive): Post Date, Description, Debit,
    Status, and optionally Sub-Organization.  Rows that are not posted,
    have no positive debit, or repeat an existing description are skipped.
    """
    tracker = _tracker(ctx)
    rows = read_csv_rows(Path(csv_file))
    summary = tracker.import_transactions(rows, actor="cli")

    click.echo()
    click.echo(f"  Processed:  {summary.processed}")
    click.echo(f"  Skipped:    {summary.skipped}")
    click.echo(f"  Errors:     {len(summary.errors)}")
    for err in summary.errors:
        click.echo(f"    ✗ {err}")
    if summary.reconciliation_error:
        click.echo(f"  ⚠ Budget reconciliation failed: {summary.reconciliation_error}")
        click.echo("    Run 'python main.py reconcile' to retry.")
    click.echo()


# --------------------------------------------------------------------
# reconcile command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def reconcile(ctx: click.Context) -> None:
    """Recompute every sub-organization's spent figure from all transactions."""
    tracker = _tracker(ctx)
    try:
        report = tracker.reconcile()
    except ReconciliationFailure as e:
        click.echo(f"\n✗ Reconciliation failed: {e}", err=True)
        if e.written:
            click.echo(f"  {len(e.written)} sub-organization(s) were already updated", err=True)
        sys.exit(1)

    click.echo(
        f"\n  Scanned {report.transactions_scanned} transactions, "
        f"{report.sub_orgs_checked} sub-organizations"
    )
    if report.changes:
        for change in report.changes:
            click.echo(
                f"    {change.sub_org_name:<22} {change.previous_spent:>12,.2f} → "
                f"{change.new_spent:>12,.2f}"
            )
    else:
        click.echo("  ✓ All budgets already consistent")
    for sub_org_id in report.unknown_sub_org_ids:
        click.echo(f"  ⚠ Transactions reference unknown sub-organization {sub_org_id}")
    click.echo()


# --------------------------------------------------------------------
# stats command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Print the dashboard figures as JSON."""
    tracker = _tracker(ctx)
    payload = dashboard_stats(
        tracker.list_purchase_orders(),
        tracker.list_sub_organizations(),
        tracker.list_transactions(),
    )
    click.echo(json.dumps(payload, indent=2, default=str))


if __name__ == "__main__":
    cli()
