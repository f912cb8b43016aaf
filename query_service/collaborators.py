"""
The asynchronous collaborator contract consumed by the execution controller,
and its pymongo / mongosh implementation.

The controller only ever awaits these methods; ``MongoCollaborator`` moves
the blocking driver and subprocess calls onto worker threads.
"""

import asyncio
from typing import Any, Dict, Optional, Protocol, Tuple

import db_executor
import script_runner
from connection_manager import ConnectionRegistry
from profile_estimator import DocumentProfile


class ScriptUnavailableError(RuntimeError):
    """The script path cannot run because no shell is installed."""


class QueryCollaborator(Protocol):
    async def get_collection_profile(
        self, connection_id: str, database: str, collection: str
    ) -> Optional[DocumentProfile]:
        ...

    async def find_documents(
        self,
        connection_id: str,
        database: str,
        collection: str,
        filter_text: str,
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        """``options``: ``skip``, ``limit``, ``sort``, ``projection``.

        Returns ``{documents: [str], total, queryTimeMs}``.
        """
        ...

    async def execute_script_with_database(
        self, connection_id: str, database: str, script: str
    ) -> Dict[str, Any]:
        """Returns ``{output, exitCode, error}``."""
        ...

    async def check_mongosh_available(self) -> Tuple[bool, str]:
        ...

    async def explain_query(
        self, connection_id: str, database: str, collection: str, filter_text: str
    ) -> Dict[str, Any]:
        ...

    async def infer_collection_schema(
        self, connection_id: str, database: str, collection: str, sample_size: int
    ) -> Dict[str, Any]:
        ...


class MongoCollaborator:
    """``QueryCollaborator`` over pymongo and a local mongosh."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def get_collection_profile(self, connection_id, database, collection):
        uri = self.registry.uri(connection_id)
        return await asyncio.to_thread(db_executor.get_collection_profile, uri, database, collection)

    async def find_documents(self, connection_id, database, collection, filter_text, options):
        uri = self.registry.uri(connection_id)
        return await asyncio.to_thread(
            db_executor.find_documents,
            uri,
            database,
            collection,
            filter_text,
            skip=options.get("skip", 0),
            limit=options.get("limit", db_executor.DEFAULT_PAGE_SIZE),
            sort=options.get("sort", ""),
            projection=options.get("projection", ""),
        )

    async def execute_script_with_database(self, connection_id, database, script):
        uri = self.registry.uri(connection_id)
        if script_runner.find_shell() is None:
            raise ScriptUnavailableError(script_runner.SHELL_NOT_FOUND)
        return await asyncio.to_thread(script_runner.execute_script_with_database, uri, database, script)

    async def check_mongosh_available(self):
        return await asyncio.to_thread(script_runner.check_mongosh_available)

    async def explain_query(self, connection_id, database, collection, filter_text):
        uri = self.registry.uri(connection_id)
        return await asyncio.to_thread(db_executor.explain_query, uri, database, collection, filter_text)

    async def infer_collection_schema(self, connection_id, database, collection, sample_size):
        uri = self.registry.uri(connection_id)
        return await asyncio.to_thread(
            db_executor.sample_collection_schema, uri, database, collection, sample_size,
        )
