import pytest

from club_ledger.rounds import PredictionRoundService
from club_ledger.service import LedgerService
from club_ledger.sql_storage import SqlAlchemyStorage
from club_ledger.storage import InMemoryStorage, seed_demo_club


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SqlAlchemyStorage.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
        store.create_schema()
    seed_demo_club(store)
    yield store
    if isinstance(store, SqlAlchemyStorage):
        store.dispose()


@pytest.fixture
def ledger(storage):
    return LedgerService(storage)


@pytest.fixture
def rounds(ledger):
    return PredictionRoundService(ledger)
