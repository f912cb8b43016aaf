"""
Connection registry: maps connection ids to a URI and a read-only flag.

Collaborators look URIs up here by id so the URI (and any password in it)
stays server-side once registered.
"""

import uuid
from typing import Any, Dict, List, Optional

from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from logger import logger

SERVER_TIMEOUT_MS = 5000


def connect_to_cluster(mongo_uri: str) -> MongoClient:
    """Create and test a MongoClient connection."""
    try:
        client = MongoClient(mongo_uri, serverSelectionTimeoutMS=SERVER_TIMEOUT_MS)
        client.server_info()  # force connection test
        return client
    except ServerSelectionTimeoutError:
        raise ConnectionError("Connection timed out. Check your MongoDB URI and network.")
    except ConnectionFailure:
        raise ConnectionError("Failed to connect to MongoDB cluster")


def verify_connection(mongo_uri: str) -> None:
    client = connect_to_cluster(mongo_uri)
    client.close()


class ConnectionRegistry:
    def __init__(self):
        self._connections: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        mongo_uri: str,
        read_only: bool = False,
        name: Optional[str] = None,
        verify: bool = True,
    ) -> Dict[str, Any]:
        if verify:
            verify_connection(mongo_uri)
        connection_id = uuid.uuid4().hex
        entry = {
            "id": connection_id,
            "name": name or connection_id[:8],
            "uri": mongo_uri,
            "read_only": read_only,
        }
        self._connections[connection_id] = entry
        logger.info("[CONNECTION] Registered %s (read_only=%s)", entry["name"], read_only)
        return entry

    def get(self, connection_id: str) -> Dict[str, Any]:
        """Raises ``KeyError`` for unknown ids."""
        try:
            return self._connections[connection_id]
        except KeyError:
            raise KeyError(f"Unknown connection: {connection_id}") from None

    def uri(self, connection_id: str) -> str:
        return self.get(connection_id)["uri"]

    def is_read_only(self, connection_id: str) -> bool:
        return self.get(connection_id)["read_only"]

    def remove(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"id": c["id"], "name": c["name"], "read_only": c["read_only"]}
            for c in self._connections.values()
        ]
