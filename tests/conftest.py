from decimal import Decimal

import pytest

from stockledger.application.concurrency import ConcurrencyController
from stockledger.application.container import StockLedger
from stockledger.core_settings import Settings
from stockledger.domain.models import Item, Variant
from stockledger.infrastructure.db import build_session_factory, create_db_engine, init_models


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'ledger.db'}",
        SERVICE_NAME="stock-ledger-test",
        LOG_LEVEL="WARNING",
        RESERVATION_SWEEP_ENABLED=False,
        RESERVATION_TTL_MINUTES=15,
        OPTIMISTIC_LOCK_MAX_ATTEMPTS=5,
        OPTIMISTIC_LOCK_BACKOFF_SECONDS=0.001,
        OPTIMISTIC_LOCK_MAX_BACKOFF_SECONDS=0.005,
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.DATABASE_URL)
    init_models(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def ledger(session_factory, settings):
    return StockLedger(session_factory, settings)


@pytest.fixture
def make_controller(session_factory):
    def _make(**kwargs):
        kwargs.setdefault("backoff_seconds", 0.001)
        kwargs.setdefault("max_backoff_seconds", 0.005)
        return ConcurrencyController(session_factory, **kwargs)
    return _make


@pytest.fixture
def catalog(session_factory):
    """One item with two variants plus an inactive item."""
    with session_factory() as session:
        shirt = Item(sku="TSHIRT-001", name="Basic T-Shirt", base_price=Decimal("100.00"), is_active=True)
        mug = Item(sku="MUG-001", name="Coffee Mug", base_price=Decimal("12.50"), is_active=True)
        retired = Item(sku="OLD-001", name="Retired Item", base_price=Decimal("5.00"), is_active=False)
        session.add_all([shirt, mug, retired])
        session.flush()
        red = Variant(item_id=shirt.id, variant_sku="TSHIRT-001-RED-M", name="Red M",
                      price_adjustment=Decimal("15.00"), is_active=True)
        blue = Variant(item_id=shirt.id, variant_sku="TSHIRT-001-BLUE-M", name="Blue M",
                       price_adjustment=Decimal("0.00"), is_active=True)
        session.add_all([red, blue])
        session.commit()
        return {
            "shirt": shirt.id,
            "mug": mug.id,
            "retired": retired.id,
            "red": red.id,
            "blue": blue.id,
        }


@pytest.fixture
def stock(ledger, catalog):
    """Stock for the red shirt variant: quantity 150, nothing reserved, version 0."""
    return ledger.stock.create_stock(
        item_id=catalog["shirt"],
        variant_id=catalog["red"],
        warehouse_location="WH-A-01-01",
        quantity=150,
        created_by="warehouse-admin",
    )
