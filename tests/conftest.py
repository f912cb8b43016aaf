import asyncio
from typing import Any, Dict, List, Optional

import pytest

from config import QuerySettings
from execution_controller import ExecutionController
from query_history import QueryHistoryStore
from schema_utils import SchemaCache


class FakeCollaborator:
    """In-memory collaborator.

    ``find_results`` / ``find_gates`` are consumed one per ``find_documents``
    call; a gate is an ``asyncio.Event`` the call waits on before answering.
    ``profile_gates`` work the same way for ``get_collection_profile``.
    """

    def __init__(self):
        self.profile = None
        self.profile_error: Optional[Exception] = None
        self.profile_gates: List[asyncio.Event] = []
        self.find_result: Dict[str, Any] = {"documents": [], "total": 0, "queryTimeMs": 1}
        self.find_results: List[Dict[str, Any]] = []
        self.find_gates: List[asyncio.Event] = []
        self.find_error: Optional[Exception] = None
        self.script_result: Dict[str, Any] = {"output": "", "exitCode": 0, "error": ""}
        self.script_error: Optional[Exception] = None
        self.mongosh = (True, "/usr/bin/mongosh")
        self.schema: Dict[str, Any] = {"collection": "users", "sampleSize": 0, "totalDocs": 0, "fields": {}}
        self.explain_result: Dict[str, Any] = {"winningPlan": "Collection Scan (no index used)"}
        self.calls: List[tuple] = []

    async def get_collection_profile(self, connection_id, database, collection):
        self.calls.append(("profile", collection))
        if self.profile_gates:
            await self.profile_gates.pop(0).wait()
        if self.profile_error is not None:
            raise self.profile_error
        return self.profile

    async def find_documents(self, connection_id, database, collection, filter_text, options):
        self.calls.append(("find", filter_text, dict(options)))
        result = self.find_results.pop(0) if self.find_results else self.find_result
        if self.find_gates:
            await self.find_gates.pop(0).wait()
        if self.find_error is not None:
            raise self.find_error
        return result

    async def execute_script_with_database(self, connection_id, database, script):
        self.calls.append(("script", script))
        if self.script_error is not None:
            raise self.script_error
        return self.script_result

    async def check_mongosh_available(self):
        self.calls.append(("mongosh",))
        return self.mongosh

    async def explain_query(self, connection_id, database, collection, filter_text):
        self.calls.append(("explain", filter_text))
        return self.explain_result

    async def infer_collection_schema(self, connection_id, database, collection, sample_size):
        self.calls.append(("schema", collection, sample_size))
        return self.schema

    def methods_called(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake():
    return FakeCollaborator()


@pytest.fixture
def history_store(tmp_path):
    return QueryHistoryStore(str(tmp_path / "storage.json"))


@pytest.fixture
def make_controller(fake, history_store):
    def _make(collection: str = "users", read_only: bool = False, **overrides) -> ExecutionController:
        values = {
            "query_timeout_seconds": 0,
            "default_page_size": 50,
            "max_page_payload_mb": 10,
            "response_size_warning_mb": 10,
            "field_count_threshold": 50,
            "large_doc_warning_kb": 512,
            "validation_debounce_ms": 0,
        }
        values.update(overrides)
        return ExecutionController(
            fake,
            SchemaCache(fake),
            "conn1",
            "app",
            collection,
            read_only=read_only,
            history_store=history_store,
            settings=QuerySettings(**values),
        )

    return _make
