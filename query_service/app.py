"""
FastAPI query service: the HTTP surface over collection views.

Features:
- Connection registry with read-only connections
- One execution controller per open collection view
- Simple find queries through the driver, everything else through mongosh
- Adaptive page size and a pre-flight response-size warning
- Auto-projection for wide collections
- Debounced editor diagnostics against sampled field names
- Explain plans, bounded query history and friendly error summaries
"""

import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from collaborators import MongoCollaborator
from config import load_settings
from connection_manager import ConnectionRegistry
from error_parser import get_error_summary, parse_error
from execution_controller import ExecutionController, ExecutionOutcome
from logger import logger
from query_history import QueryHistoryStore
from schema_utils import SchemaCache
from script_runner import check_mongosh_available

VERSION = "1.0.0"

app = FastAPI(title="MongoDB Query Service", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

registry = ConnectionRegistry()
collaborator = MongoCollaborator(registry)
schema_cache = SchemaCache(collaborator)
history_store = QueryHistoryStore()
views: Dict[str, ExecutionController] = {}

# ---------------------- REQUEST MODELS ----------------------


class ConnectionRequest(BaseModel):
    mongo_uri: str
    read_only: bool = False
    name: Optional[str] = None


class ViewRequest(BaseModel):
    connection_id: str
    database_name: str
    collection_name: str


class CollectionRequest(BaseModel):
    collection_name: str


class QueryTextRequest(BaseModel):
    query: str


class PagingRequest(BaseModel):
    skip: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, ge=1, description="Documents per page")


class ErrorRequest(BaseModel):
    error: str


# ---------------------- HELPERS ----------------------


def _get_view(view_id: str) -> ExecutionController:
    controller = views.get(view_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"Unknown view: {view_id}")
    return controller


def _view_response(view_id: str, controller: ExecutionController, outcome: Any = None) -> Dict[str, Any]:
    response = {"view_id": view_id, "view": controller.view.model_dump(mode="json")}
    if outcome is not None:
        response["outcome"] = outcome.value
    return response


def _execution_response(view_id: str, controller: ExecutionController, outcome: ExecutionOutcome):
    if outcome is ExecutionOutcome.BLOCKED:
        raise HTTPException(status_code=403, detail=controller.view.error)
    return _view_response(view_id, controller, outcome)


# ---------------------- CONNECTIONS ----------------------


@app.post("/connections")
def create_connection(request: ConnectionRequest):
    try:
        entry = registry.register(request.mongo_uri, read_only=request.read_only, name=request.name)
    except ConnectionError as e:
        logger.error("connect error: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": entry["id"], "name": entry["name"], "read_only": entry["read_only"]}


@app.get("/connections")
def list_connections():
    return {"connections": registry.describe()}


@app.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str):
    registry.remove(connection_id)
    schema_cache.invalidate_connection(connection_id)
    for view_id in [v for v, c in views.items() if c.connection_id == connection_id]:
        views.pop(view_id).cancel_query()
    return {"status": "removed"}


# ---------------------- VIEWS ----------------------


@app.post("/views")
async def open_view(request: ViewRequest):
    """Open a collection view and start sampling its schema in the background."""
    try:
        read_only = registry.is_read_only(request.connection_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))

    controller = ExecutionController(
        collaborator,
        schema_cache,
        request.connection_id,
        request.database_name,
        request.collection_name,
        read_only=read_only,
        history_store=history_store,
        settings=load_settings(),
    )
    view_id = uuid.uuid4().hex
    views[view_id] = controller
    schema_cache.prefetch_schema(request.connection_id, request.database_name, request.collection_name)
    logger.info("[VIEW] Opened %s.%s as %s", request.database_name, request.collection_name, view_id)
    return _view_response(view_id, controller)


@app.get("/views/{view_id}")
async def get_view(view_id: str):
    return _view_response(view_id, _get_view(view_id))


@app.delete("/views/{view_id}")
async def close_view(view_id: str):
    _get_view(view_id).cancel_query()
    views.pop(view_id, None)
    return {"status": "closed"}


@app.post("/views/{view_id}/collection")
async def change_collection(view_id: str, request: CollectionRequest):
    controller = _get_view(view_id)
    controller.set_collection(request.collection_name)
    return _view_response(view_id, controller)


@app.put("/views/{view_id}/query")
async def set_query(view_id: str, request: QueryTextRequest):
    """Update the editor text; diagnostics follow after the debounce delay."""
    controller = _get_view(view_id)
    controller.set_query(request.query)
    return _view_response(view_id, controller)


@app.post("/views/{view_id}/validate")
async def validate(view_id: str):
    diagnostics = _get_view(view_id).validate_now()
    return {"diagnostics": [d.model_dump() for d in diagnostics]}


@app.post("/views/{view_id}/paging")
async def set_paging(view_id: str, request: PagingRequest):
    controller = _get_view(view_id)
    if request.limit is not None:
        controller.set_user_limit(request.limit)
    if request.skip is not None:
        controller.set_skip(request.skip)
    return _view_response(view_id, controller)


@app.post("/views/{view_id}/schema")
async def refresh_schema(view_id: str, refresh: bool = False):
    controller = _get_view(view_id)
    schema = await schema_cache.fetch_schema(
        controller.connection_id, controller.database, controller.collection, force_refresh=refresh,
    )
    if schema is None:
        raise HTTPException(status_code=502, detail="Schema sampling failed")
    return {"schema": schema}


# ---------------------- EXECUTION ----------------------


@app.post("/views/{view_id}/execute")
async def execute(view_id: str):
    """Run the editor query: classify → size guard → find / mongosh → normalize."""
    controller = _get_view(view_id)
    outcome = await controller.execute_query()
    return _execution_response(view_id, controller, outcome)


@app.post("/views/{view_id}/cancel")
async def cancel(view_id: str):
    controller = _get_view(view_id)
    controller.cancel_query()
    return _view_response(view_id, controller)


@app.post("/views/{view_id}/size-warning/bypass")
async def bypass_size_warning(view_id: str):
    controller = _get_view(view_id)
    outcome = await controller.bypass_size_warning()
    return _execution_response(view_id, controller, outcome)


@app.post("/views/{view_id}/size-warning/shrink")
async def shrink_page_size(view_id: str):
    controller = _get_view(view_id)
    try:
        outcome = await controller.apply_suggested_page_size()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _execution_response(view_id, controller, outcome)


@app.post("/views/{view_id}/size-warning/dismiss")
async def dismiss_size_warning(view_id: str):
    controller = _get_view(view_id)
    controller.dismiss_size_warning()
    return _view_response(view_id, controller)


@app.post("/views/{view_id}/show-all-fields")
async def show_all_fields(view_id: str):
    controller = _get_view(view_id)
    controller.show_all_fields()
    return _view_response(view_id, controller)


@app.post("/views/{view_id}/explain")
async def explain(view_id: str):
    controller = _get_view(view_id)
    try:
        return await controller.explain_query()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("explain error: %s", e)
        raise HTTPException(status_code=502, detail=get_error_summary(e))


# ---------------------- MISC ----------------------


@app.get("/history")
def get_history():
    return {"history": history_store.load()}


@app.post("/errors/describe")
def describe_error(request: ErrorRequest):
    """Friendly message, hint and suggested action for a raw error string."""
    return parse_error(request.error)


@app.post("/clear-cache")
def clear_cache():
    """Clear cached schemas and collection profiles."""
    schema_cache.clear()
    return {"status": "cache cleared"}


@app.get("/health")
def health_check():
    available, path = check_mongosh_available()
    return {"status": "ok", "version": VERSION, "mongosh": available, "mongosh_path": path or None}
