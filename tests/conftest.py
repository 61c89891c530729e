"""
Pytest configuration and fixtures.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, List

import pytest
import pytest_asyncio

from parking_core.config import Settings
from parking_core.core import ParkingEngine
from parking_core.core.pricing_store import build_policy
from parking_core.domain.errors import HardwareError
from parking_core.domain.records import Receipt, RegisterSummary

# Monday
START = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)

OPERATOR = "op-1"


class FakeClock:
    """Settable clock handed to the services."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class FakePrinter:
    """Records receipts; raises HardwareError while fail is set."""

    def __init__(self) -> None:
        self.printed: List[Receipt] = []
        self.fail = False

    async def print_receipt(self, receipt: Receipt) -> None:
        if self.fail:
            raise HardwareError("Printer out of paper")
        self.printed.append(receipt)


def sqlite_settings(path: Path, **overrides: Any) -> Settings:
    """Test settings against a throwaway SQLite file."""
    values = dict(
        database_url=f"sqlite+aiosqlite:///{path}",
        sqlite_busy_timeout=30.0,
        transaction_retry_base_delay=0.001,
        transaction_retry_max_delay=0.01,
        lot_timezone="UTC",
        app_name="parking-core-test",
        app_env="test",
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def printer() -> FakePrinter:
    return FakePrinter()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return sqlite_settings(tmp_path / "parking_test.db")


@pytest_asyncio.fixture
async def engine_factory(
    clock: FakeClock, printer: FakePrinter
) -> AsyncGenerator[Callable[[Settings], Awaitable[ParkingEngine]], Any]:
    """Build started engines with the default tariff installed."""
    created: List[ParkingEngine] = []

    async def _make(settings: Settings) -> ParkingEngine:
        engine = ParkingEngine.from_settings(settings, printer=printer, clock=clock)
        await engine.start()
        await engine.configure_pricing(build_policy())
        created.append(engine)
        return engine

    yield _make

    for engine in created:
        await engine.close()


@pytest_asyncio.fixture
async def parking_engine(engine_factory: Any, test_settings: Settings) -> ParkingEngine:
    return await engine_factory(test_settings)


@pytest.fixture
def parking(parking_engine: ParkingEngine) -> Any:
    return parking_engine.parking


@pytest.fixture
def ledger(parking_engine: ParkingEngine) -> Any:
    return parking_engine.ledger


@pytest.fixture
def pension(parking_engine: ParkingEngine) -> Any:
    return parking_engine.pension


@pytest.fixture
def partners(parking_engine: ParkingEngine) -> Any:
    return parking_engine.partners


@pytest_asyncio.fixture
async def open_register(ledger: Any) -> RegisterSummary:
    """OPEN register for OPERATOR with 500.00 in the drawer."""
    return await ledger.open_register(OPERATOR, "500.00")
