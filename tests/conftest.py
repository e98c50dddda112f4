"""
Pytest configuration and shared fixtures for the budget ledger test suite.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="ledger_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> "Config":
    """Provide a test configuration with an isolated database."""
    from config import Config

    config = Config()
    config.db_path = temp_dir / "output" / "ledger.db"
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    config.reconcile_mode = "two_phase"
    config.require_full_link_allocation = False
    config.sub_orgs_file = None
    return config


@pytest.fixture
def test_db(test_config) -> "Database":
    """Provide a test database instance."""
    from ledger.database import Database
    return Database(test_config.db_path)


@pytest.fixture
def sample_catalog() -> list[dict]:
    """A small sub-organization catalog with fixed ids."""
    return [
        {"id": "outreach",  "name": "Outreach",   "budgetAllocated": 8000},
        {"id": "marketing", "name": "Marketing",  "budgetAllocated": 6000},
        {"id": "ftc1002",   "name": "FTC 1002",   "budgetAllocated": 12000},
        {"id": "ops",       "name": "Operations", "budgetAllocated": 9000},
    ]


@pytest.fixture
def tracker(test_config, test_db, sample_catalog) -> "BudgetTracker":
    """A BudgetTracker over the test database, seeded with sample_catalog."""
    from ledger.service import BudgetTracker

    t = BudgetTracker(test_config, db=test_db)
    t.seed_sub_organizations(sample_catalog)
    return t


@pytest.fixture
def sample_bank_rows() -> list[dict]:
    """Rows as read from a bank-export CSV."""
    return [
        {"Post Date": "2024-03-01", "Description": "AMAZON MKTPLACE", "Debit": "120.50",
         "Status": "Posted", "Sub-Organization": "Outreach"},
        {"Post Date": "03/02/2024", "Description": "HOME DEPOT #441", "Debit": "$1,200.00",
         "Status": "posted", "Sub-Organization": ""},
        {"Post Date": "2024-03-03", "Description": "PENDING CHARGE", "Debit": "40.00",
         "Status": "Pending", "Sub-Organization": ""},
        {"Post Date": "2024-03-04", "Description": "DEPOSIT", "Debit": "",
         "Status": "Posted", "Sub-Organization": ""},
        {"Post Date": "2024-03-05", "Description": "AMAZON MKTPLACE", "Debit": "120.50",
         "Status": "Posted", "Sub-Organization": "Outreach"},
    ]


@pytest.fixture
def sample_bank_csv(temp_dir: Path) -> Path:
    """Create a sample bank-export CSV file."""
    csv_path = temp_dir / "statement.csv"
    content = """Post Date,Description,Debit,Credit,Status,Sub-Organization
2024-03-01,AMAZON MKTPLACE,120.50,,Posted,Outreach
2024-03-02,HOME DEPOT #441,75.25,,Posted,Marketting
2024-03-03,PAYROLL DEPOSIT,,500.00,Posted,
2024-03-04,PENDING CHARGE,40.00,,Pending,"""
    csv_path.write_text(content)
    return csv_path


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
