from decimal import Decimal

import pytest

from kidledger.core.config import LedgerSettings
from kidledger.db import Base, BuildSessionFactory, CreateLedgerEngine
from kidledger.modules.ledger import models as ledger_models  # noqa: F401


@pytest.fixture
def db():
    engine = CreateLedgerEngine("sqlite://")
    Base.metadata.create_all(engine)
    session = BuildSessionFactory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings():
    return LedgerSettings(
        PointsToCurrencyRate=Decimal("0.01"),
        TimeZoneName="UTC",
        TransactionsPageLimit=50,
    )
