"""
tests/conftest.py
=================
Shared pytest fixtures for the Formula Platform test suite.
"""
import sys
import os

# Ensure the project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from formula_platform.types import Quarter


# Twelve quarter ends, oldest → newest
LABELS = [
    "Jun 2021", "Sep 2021", "Dec 2021", "Mar 2022",
    "Jun 2022", "Sep 2022", "Dec 2022", "Mar 2023",
    "Jun 2023", "Sep 2023", "Dec 2023", "Mar 2024",
]

SALES = [150, 160, 170, 180, 200, 210, 220, 250, 300, 350, 400, 500]
NET_PROFIT = [10, 12, 11, 15, 18, 17, 20, 24, 30, 33, 38, 45]
OPM = ["12%", "12.5%", "13%", "12%", "14%", "15%", "15.5%", "16%", "17%", "18%", "18.5%", "20%"]


def make_quarters(metrics_by_name, labels=None):
    """{metric: [v_oldest, ..., v_newest]} → list of Quarter (oldest → newest)."""
    labels = labels or LABELS
    quarters = []
    for i, label in enumerate(labels):
        quarters.append(Quarter(label, {name: values[i] for name, values in metrics_by_name.items()}))
    return quarters


@pytest.fixture
def quarters():
    """Realistic 12-quarter dataset with screener-style metric names."""
    return make_quarters({
        "Sales": SALES,
        "Net Profit": NET_PROFIT,
        "OPM %": OPM,
        "Sales Growth(YoY) %": [None, None, None, None, "33.3%", "31.3%", "29.4%", "38.9%", "50%", "66.7%", "81.8%", "100%"],
        "EPS in Rs": ["1.2", "1.4", "1.3", "1.8", "2.1", "2.0", "2.4", "2.8", "3.5", "3.9", "4.4", "5.2"],
    })


@pytest.fixture
def shuffled_quarters(quarters):
    """Same dataset, deliberately out of order."""
    order = [5, 11, 0, 7, 3, 9, 1, 10, 2, 8, 4, 6]
    return [quarters[i] for i in order]


@pytest.fixture
def bank_quarters():
    """A lender: reports Financing Margin instead of OPM."""
    return make_quarters({
        "Revenue": SALES,
        "Financing Margin %": ["30%", "31%", "29%", "32%", "33%", "34%", "35%", "36%", "35%", "37%", "38%", "40%"],
        "Net Profit": NET_PROFIT,
    })


@pytest.fixture
def empty_metric_quarters():
    """Quarters that carry labels but only null metric values."""
    return make_quarters({"Sales": [None] * 12, "Net Profit": [None] * 12})
