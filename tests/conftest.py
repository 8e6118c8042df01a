import pytest

from config import Config
from counters import CounterStore
from db import PersistenceManager
from merge import MergeEngine

ADMIN_TOKEN = "letmein-admin-token"
JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        secret="test-secret",
        db_path=str(tmp_path / "db" / "counter.db"),
        admin_token=ADMIN_TOKEN,
        jwt_secret=JWT_SECRET,
        save_interval=3600,
    )


@pytest.fixture
def store(config) -> CounterStore:
    return CounterStore(config)


@pytest.fixture
def merger(store) -> MergeEngine:
    return MergeEngine(store)


@pytest.fixture
def persistence(config):
    p = PersistenceManager(config)
    yield p
    p.close()


def visit(store, site, page, n, prefix="10.0.0."):
    """ n events from n distinct visitors. """
    for i in range(n):
        store.record_event(site, page, f"{prefix}{i}", "Mozilla/5.0")
