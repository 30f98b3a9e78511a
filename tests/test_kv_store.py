import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from app.db import Base, InMemoryKeyValueStore, SqlKeyValueStore

MIGRATION = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "20261019_0001_add_kv_entries.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("kv_migration", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_in_memory_store_copies_values():
    store = InMemoryKeyValueStore({"a": b"1"})
    value = bytearray(b"2")
    store.set("b", value)
    value[0] = ord("9")

    assert store.get("a") == b"1"
    assert store.get("b") == b"2"
    assert store.get("missing") is None


def test_sql_store_round_trips_and_overwrites(tmp_path):
    url = f"sqlite:///{tmp_path / 'kv.db'}"
    store = SqlKeyValueStore.from_url(url)

    assert store.get("pico.treatments") is None
    store.set("pico.treatments", b"[]")
    store.set("pico.treatments", b'[{"id": "x"}]')

    reopened = SqlKeyValueStore.from_url(url)
    assert reopened.get("pico.treatments") == b'[{"id": "x"}]'


def test_migration_matches_model_table():
    engine = create_engine("sqlite://")
    migration = _load_migration()

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.upgrade()
        columns = {c["name"] for c in inspect(conn).get_columns("kv_entries")}

    assert columns == set(Base.metadata.tables["kv_entries"].columns.keys())

    store = SqlKeyValueStore(engine, create_schema=False)
    store.set("pico.administrations", b"[]")
    assert store.get("pico.administrations") == b"[]"

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.downgrade()
        assert not inspect(conn).has_table("kv_entries")
