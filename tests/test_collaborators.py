import asyncio

import pytest

import collaborators
import db_executor
from collaborators import MongoCollaborator, ScriptUnavailableError
from connection_manager import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


def test_find_documents_runs_executor_with_registered_uri(registry, monkeypatch):
    entry = registry.register("mongodb://localhost/app", verify=False)
    seen = {}

    def fake_find(uri, database, collection, filter_text, **kwargs):
        seen.update(uri=uri, database=database, collection=collection, filter=filter_text, **kwargs)
        return {"documents": [], "total": 0, "queryTimeMs": 0}

    monkeypatch.setattr(db_executor, "find_documents", fake_find)

    result = asyncio.run(
        MongoCollaborator(registry).find_documents(
            entry["id"], "app", "users", "{}", {"skip": 10, "limit": 20, "projection": '{"a": 1}'},
        )
    )

    assert result["total"] == 0
    assert seen == {
        "uri": "mongodb://localhost/app",
        "database": "app",
        "collection": "users",
        "filter": "{}",
        "skip": 10,
        "limit": 20,
        "sort": "",
        "projection": '{"a": 1}',
    }


def test_script_without_shell_raises_unavailable(registry, monkeypatch):
    entry = registry.register("mongodb://localhost", verify=False)
    monkeypatch.setattr(collaborators.script_runner, "find_shell", lambda: None)

    with pytest.raises(ScriptUnavailableError):
        asyncio.run(MongoCollaborator(registry).execute_script_with_database(entry["id"], "app", "db.x.find()"))


def test_unknown_connection(registry):
    with pytest.raises(KeyError):
        asyncio.run(MongoCollaborator(registry).explain_query("missing", "app", "users", "{}"))
