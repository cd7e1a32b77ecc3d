"""
Root test configuration.

Test organization:
- unit/        Fast, isolated, no I/O, scripted model responses
- integration/ Component boundaries, real I/O to temp locations

Run specific levels:
    pytest tests/unit -v           # Fast feedback loop
    pytest tests/integration -v    # Before commit
    pytest tests -v                # Everything
"""

import sys
from pathlib import Path

# Add project root (and this directory, for shared test helpers) to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from models import Element


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast isolated tests")
    config.addinivalue_line("markers", "integration: Component boundary tests")
    config.addinivalue_line("markers", "slow: Tests that take > 1s")


@pytest.fixture
def d1_elements():
    """Three requirements: A, B, C."""
    return [
        Element(id="A", label="Users can log in", content="Users authenticate with email and password.", category="auth"),
        Element(id="B", label="Sessions expire", content="Sessions expire after 30 minutes idle.", category="auth"),
        Element(id="C", label="Audit logging", content="Every admin action is logged.", category="ops"),
    ]


@pytest.fixture
def d2_elements():
    """Two implementation artifacts: X, Y."""
    return [
        Element(id="X", label="auth/login.py", content="def login(email, password): ...", category="code"),
        Element(id="Y", label="scripts/cleanup.sh", content="rm -rf /tmp/cache", category="script"),
    ]


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    """Add timing summary at end of test run."""
    stats = terminalreporter.stats

    # Collect slowest tests
    if 'passed' in stats:
        durations = []
        for report in stats['passed']:
            if hasattr(report, 'duration'):
                durations.append((report.duration, report.nodeid))

        if durations:
            durations.sort(reverse=True)
            terminalreporter.write_sep("=", "slowest 5 tests")
            for duration, nodeid in durations[:5]:
                terminalreporter.write_line(f"  {duration:.2f}s  {nodeid}")
