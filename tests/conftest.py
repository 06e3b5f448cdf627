"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import pmmbot.
"""

import sys
from pathlib import Path

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from pmmbot.core.models import Instrument  # noqa: E402
from pmmbot.exchange.paper import PaperExchange  # noqa: E402

from helpers import D, make_book  # noqa: E402


@pytest.fixture
def instrument() -> Instrument:
    return Instrument(symbol="TESTUSDT", base_asset="TEST", quote_asset="USDT", price_decimals=2, qty_decimals=2)


@pytest.fixture
def paper(instrument) -> PaperExchange:
    return PaperExchange(
        instrument,
        balances={"USDT": D("1000"), "TEST": D("10")},
        book=make_book("99.9", "100.1"),
    )
