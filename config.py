"""
Central configuration for the budget ledger.

All paths, tolerances, and reconciliation settings are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/ledger_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

DEFAULT_OUTPUT_DIR = PROJECT_ROOT / "output"
DEFAULT_DB_PATH    = DEFAULT_OUTPUT_DIR / "ledger.db"

RECONCILE_MODES = ("two_phase", "atomic")

# Seed catalog used when the database holds no sub-organizations yet.
DEFAULT_SUB_ORGANIZATIONS: list[dict] = [
    {"name": "Outreach",         "budgetAllocated": 8000},
    {"name": "Marketing",        "budgetAllocated": 6000},
    {"name": "FTC 1002",         "budgetAllocated": 12000},
    {"name": "FTC 11347",        "budgetAllocated": 10000},
    {"name": "FRC",              "budgetAllocated": 15000},
    {"name": "Operations",       "budgetAllocated": 9000},
    {"name": "Fundraising",      "budgetAllocated": 4000},
    {"name": "Miscellaneous",    "budgetAllocated": 3000},
    {"name": "Equipment",        "budgetAllocated": 7500},
    {"name": "Travel",           "budgetAllocated": 5000},
    {"name": "Training",         "budgetAllocated": 2500},
    {"name": "Community Events", "budgetAllocated": 4500},
]


@dataclass
class Config:
    # --- Storage ---
    db_path: Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    # --- Allocation / reconciliation tolerances ---
    allocation_tolerance: float = 0.01   # $0.01 slack when a split must sum to its total
    reconcile_tolerance:  float = 0.01   # skip budget_spent writes that change it by <= $0.01

    # --- Reconciliation strategy ---
    reconcile_mode: str = field(
        default_factory=lambda: os.getenv("RECONCILE_MODE", "two_phase")
    )
    # two_phase → commit the mutation, then reconcile in a separate commit;
    #             a failed reconciliation leaves the mutation in place
    # atomic    → mutation and reconciliation share one SQLite transaction

    # --- PO linking ---
    require_full_link_allocation: bool = field(
        default_factory=lambda: os.getenv("REQUIRE_FULL_LINK_ALLOCATION", "false").lower() == "true"
    )

    # --- Import ---
    sub_org_fuzzy_threshold: int = 80    # Minimum rapidfuzz score (0-100)

    # --- Seed catalog ---
    sub_orgs_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["SUB_ORGS_FILE"]) if os.getenv("SUB_ORGS_FILE") else None
        )
    )

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from ledger_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "ledger_settings.json"
        if settings_file.exists():
            _type_map: dict[str, type] = {
                "allocation_tolerance":          float,
                "reconcile_tolerance":           float,
                "reconcile_mode":                str,
                "require_full_link_allocation":  bool,
                "sub_org_fuzzy_threshold":       int,
            }
            try:
                with open(settings_file, encoding="utf-8") as f:
                    overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
                for key, val in overrides.items():
                    if key in _type_map and hasattr(self, key):
                        setattr(self, key, _type_map[key](val))
            except Exception as exc:
                logger.warning("Failed to load ledger_settings.json: %s", exc)

        if self.reconcile_mode not in RECONCILE_MODES:
            logger.warning(
                "Unknown reconcile_mode %r; falling back to 'two_phase'", self.reconcile_mode,
            )
            self.reconcile_mode = "two_phase"

    def load_sub_org_catalog(self) -> list[dict]:
        """The seed catalog: sub_orgs_file when set, else the built-in list."""
        if self.sub_orgs_file is None:
            return [dict(entry) for entry in DEFAULT_SUB_ORGANIZATIONS]
        with open(self.sub_orgs_file, encoding="utf-8") as f:
            return json.load(f)

    def ensure_output_dir(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
