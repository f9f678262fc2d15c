"""Shared fixtures: every store-backed behaviour runs against both stores."""

from __future__ import annotations

import pytest

from council_portal.store.memory import InMemoryDocumentStore
from council_portal.store.sql import SqlDocumentStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return
    sql_store = SqlDocumentStore(f"sqlite:///{tmp_path / 'council.db'}")
    sql_store.initialize()
    yield sql_store
    sql_store.close()
