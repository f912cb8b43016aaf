"""
Execution controller: one instance per open collection view.

Pipeline for ``execute_query``::

    read-only guard → epoch += 1 → classify → profile → effective limit
        → (simple) response-size guard → (simple) auto-projection
        → find / script → normalize → schema merge, history, columns

Cancellation is an epoch counter, not a signal.  Every call captures the
epoch it was issued under and, after each ``await``, compares it with the
current one; a mismatch means the result is stale and is dropped without
touching the view.  ``cancel_query``, the timeout timer and collection
changes all just move the epoch forward.
"""

import asyncio
import math
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Set

from pydantic import BaseModel, computed_field

from collaborators import QueryCollaborator, ScriptUnavailableError
from config import QuerySettings, load_settings
from error_parser import get_error_summary
from logger import logger
from output_normalizer import (
    available_columns,
    extract_field_paths,
    normalize_find_result,
    normalize_script_result,
)
from profile_estimator import (
    DocumentProfile,
    ResponseSizeEstimate,
    compute_effective_limit,
    estimate_response_size,
    health_warnings,
)
from projection_planner import ProjectionPlanner
from query_classifier import (
    QueryKind,
    build_full_query,
    classify_query,
    is_write_query,
    parse_filter_from_query,
    parse_projection_from_query,
    wrap_script_for_output,
)
from query_history import QueryHistoryStore
from query_validator import DebouncedValidator, Diagnostic
from schema_utils import SchemaCache

READ_ONLY_MESSAGE = "Write operation blocked - connection is in read-only mode"
MONGOSH_REQUIRED_MESSAGE = (
    "Invalid query syntax. For complex queries (aggregations, scripts), "
    "install mongosh: https://www.mongodb.com/try/download/shell"
)
EXPLAIN_SIMPLE_ONLY_MESSAGE = "Explain is only available for simple find queries"


class QueryPolicyError(Exception):
    """The query is not allowed on this connection."""


class ExecutionState(str, Enum):
    IDLE = "idle"
    ESTIMATING = "estimating"
    WARNING_PENDING = "warning_pending"
    RUNNING = "running"


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    BLOCKED = "blocked"
    WARNING = "warning"
    STALE = "stale"


class PagingState(BaseModel):
    skip: int = 0
    user_limit: int
    effective_limit: int
    is_adaptive: bool = False
    adaptive_info: Optional[str] = None
    total: int = 0

    @computed_field
    @property
    def current_page(self) -> int:
        return self.skip // max(1, self.effective_limit) + 1

    @computed_field
    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / max(1, self.effective_limit)))


class ViewState(BaseModel):
    """Everything the UI renders for one collection view."""

    query: str
    documents: List[Dict[str, Any]] = []
    total: int = 0
    query_time_ms: Optional[int] = None
    loading: bool = False
    state: ExecutionState = ExecutionState.IDLE
    outcome: Optional[ExecutionOutcome] = None
    error: Optional[str] = None
    error_summary: Optional[str] = None
    size_warning: Optional[ResponseSizeEstimate] = None
    paging: PagingState
    auto_projection_info: Optional[Dict[str, int]] = None
    available_columns: List[str] = []
    diagnostics: List[Diagnostic] = []
    health_warnings: List[str] = []


class QuerySnapshot(NamedTuple):
    """Inputs of one execution, frozen when it starts."""

    query: str
    connection_id: str
    database: str
    collection: str
    skip: int
    user_limit: int
    read_only: bool


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _preview(query: str, limit: int = 200) -> str:
    return query if len(query) <= limit else query[:limit] + "..."


class ExecutionController:
    def __init__(
        self,
        collaborator: QueryCollaborator,
        schema_cache: SchemaCache,
        connection_id: str,
        database: str,
        collection: str,
        read_only: bool = False,
        history_store: Optional[QueryHistoryStore] = None,
        settings: Optional[QuerySettings] = None,
    ):
        self.collaborator = collaborator
        self.schema_cache = schema_cache
        self.history_store = history_store
        self.settings = settings or load_settings()

        self.connection_id = connection_id
        self.database = database
        self.collection = collection
        self.read_only = read_only

        self._epoch = 0
        self._in_flight: Set[int] = set()
        # outcome of in-flight epochs ended by cancel / timeout, read back by the stale caller
        self._resolutions: Dict[int, ExecutionOutcome] = {}
        self._size_bypass = False

        self.projection = ProjectionPlanner(self.settings.field_count_threshold)
        self.history: List[Dict[str, Any]] = history_store.load() if history_store else []

        page_size = self.settings.default_page_size
        self.view = ViewState(
            query=build_full_query(collection, "{}"),
            paging=PagingState(user_limit=page_size, effective_limit=page_size),
        )
        self.validator = DebouncedValidator(
            self._field_names,
            self._publish_diagnostics,
            self.settings.validation_debounce_ms,
        )

    # ---------------------- EPOCHS ----------------------

    @property
    def epoch(self) -> int:
        return self._epoch

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch

    def _stale(self, epoch: int) -> ExecutionOutcome:
        logger.debug("[EXECUTE] Dropping result of stale epoch %d (current %d)", epoch, self._epoch)
        return self._resolutions.pop(epoch, ExecutionOutcome.STALE)

    def _end_epoch(self, outcome: ExecutionOutcome) -> None:
        for epoch in [e for e in self._resolutions if e not in self._in_flight]:
            del self._resolutions[epoch]
        if self._epoch in self._in_flight:
            self._resolutions[self._epoch] = outcome
        self._epoch += 1

    # ---------------------- EDITOR ----------------------

    def _field_names(self) -> Optional[Set[str]]:
        return self.schema_cache.get_field_names(self.connection_id, self.database, self.collection)

    def _publish_diagnostics(self, diagnostics: List[Diagnostic]) -> None:
        self.view.diagnostics = diagnostics

    def _profile(self) -> Optional[DocumentProfile]:
        return self.schema_cache.get_collection_profile(self.connection_id, self.database, self.collection)

    def _refresh_projection_info(self) -> None:
        self.view.auto_projection_info = self.projection.info(self.view.query, self._profile())

    def set_query(self, text: str) -> None:
        """Replace the editor text and (re)start debounced validation."""
        self.view.query = text
        self._refresh_projection_info()
        if _has_running_loop():
            self.validator.schedule(text)
        else:
            self.validator.validate_now(text)

    def validate_now(self) -> List[Diagnostic]:
        return self.validator.validate_now(self.view.query)

    def set_skip(self, skip: int) -> None:
        self.view.paging.skip = max(0, skip)

    def set_user_limit(self, limit: int) -> None:
        limit = max(1, limit)
        paging = self.view.paging
        paging.user_limit = limit
        paging.effective_limit = limit
        paging.is_adaptive = False
        paging.adaptive_info = None
        paging.skip = 0

    def set_collection(self, collection: str) -> None:
        """Switch the view to another collection, dropping anything in flight."""
        self._end_epoch(ExecutionOutcome.CANCELLED)
        self.collection = collection
        self.projection.reset()
        self._size_bypass = False
        self.validator.cancel()

        limit = self.view.paging.user_limit
        self.view = ViewState(
            query=build_full_query(collection, "{}"),
            paging=PagingState(user_limit=limit, effective_limit=limit),
        )
        if _has_running_loop():
            self.schema_cache.prefetch_schema(self.connection_id, self.database, collection)
        logger.info("[VIEW] Switched to %s.%s", self.database, collection)

    def show_all_fields(self) -> str:
        self.view.query = self.projection.show_all_fields(self.collection, self.view.query)
        self.view.auto_projection_info = None
        return self.view.query

    # ---------------------- EXECUTION ----------------------

    def _snapshot(self) -> QuerySnapshot:
        return QuerySnapshot(
            query=self.view.query,
            connection_id=self.connection_id,
            database=self.database,
            collection=self.collection,
            skip=self.view.paging.skip,
            user_limit=self.view.paging.user_limit,
            read_only=self.read_only,
        )

    @staticmethod
    def check_policy(snap: QuerySnapshot) -> None:
        if snap.read_only and is_write_query(snap.query):
            raise QueryPolicyError(READ_ONLY_MESSAGE)

    async def execute_query(self) -> ExecutionOutcome:
        snap = self._snapshot()
        try:
            self.check_policy(snap)
        except QueryPolicyError as exc:
            logger.warning("[EXECUTE] Blocked on read-only connection: %s", _preview(snap.query))
            self.view.error = str(exc)
            self.view.error_summary = get_error_summary(exc)
            self.view.outcome = ExecutionOutcome.BLOCKED
            return ExecutionOutcome.BLOCKED

        self._epoch += 1
        my_epoch = self._epoch
        self._in_flight.add(my_epoch)
        try:
            return await self._run_epoch(snap, my_epoch)
        finally:
            self._in_flight.discard(my_epoch)
            self._resolutions.pop(my_epoch, None)

    async def _run_epoch(self, snap: QuerySnapshot, my_epoch: int) -> ExecutionOutcome:
        kind = classify_query(snap.query)
        self.view.state = ExecutionState.ESTIMATING

        profile = await self._ensure_profile(snap)
        if not self._is_current(my_epoch):
            return self._stale(my_epoch)
        self.view.health_warnings = health_warnings(profile, self.settings.large_doc_warning_kb)

        limit = compute_effective_limit(snap.user_limit, profile, self.settings.max_page_payload_mb)
        paging = self.view.paging
        paging.effective_limit = limit.limit
        paging.is_adaptive = limit.isAdaptive
        paging.adaptive_info = limit.adaptiveInfo

        if kind is QueryKind.SIMPLE and not self._size_bypass:
            estimate = estimate_response_size(profile, limit.limit, self.settings.response_size_warning_mb)
            if estimate is not None:
                logger.info(
                    "[EXECUTE] Holding query: ~%.1f MB expected, suggesting %d per page",
                    estimate.estimatedMB, estimate.suggestedPageSize,
                )
                self.view.size_warning = estimate
                self.view.state = ExecutionState.WARNING_PENDING
                self.view.outcome = ExecutionOutcome.WARNING
                return ExecutionOutcome.WARNING
        self._size_bypass = False
        self.view.size_warning = None

        logger.info(
            "[EXECUTE] Executing %s query on %s.%s (limit %d): %s",
            "find" if kind is QueryKind.SIMPLE else "mongosh",
            snap.database, snap.collection, limit.limit, _preview(snap.query),
        )
        self.view.state = ExecutionState.RUNNING
        self.view.loading = True
        self.view.error = None
        self.view.error_summary = None

        timer = self._start_timeout(my_epoch)
        try:
            if kind is QueryKind.SIMPLE:
                return await self._execute_find(snap, my_epoch, limit.limit, profile)
            return await self._execute_script(snap, my_epoch)
        except Exception as exc:
            if not self._is_current(my_epoch):
                return self._stale(my_epoch)
            self._apply_failure(snap, exc)
            return ExecutionOutcome.FAILED
        finally:
            if timer is not None:
                timer.cancel()

    async def _ensure_profile(self, snap: QuerySnapshot) -> Optional[DocumentProfile]:
        profile = self.schema_cache.get_collection_profile(snap.connection_id, snap.database, snap.collection)
        if profile is None:
            profile = await self.schema_cache.fetch_collection_profile(
                snap.connection_id, snap.database, snap.collection,
            )
        return profile

    async def _execute_find(
        self,
        snap: QuerySnapshot,
        my_epoch: int,
        limit: int,
        profile: Optional[DocumentProfile],
    ) -> ExecutionOutcome:
        filter_text = parse_filter_from_query(snap.query)
        user_projection = parse_projection_from_query(snap.query)
        projection = user_projection or ""

        schema = self.schema_cache.get_cached_schema(snap.connection_id, snap.database, snap.collection)
        planned = self.projection.plan(snap.collection, filter_text, user_projection, profile, schema)
        if planned is not None:
            projection, self.view.query = planned

        result = await self.collaborator.find_documents(
            snap.connection_id,
            snap.database,
            snap.collection,
            filter_text,
            {"skip": snap.skip, "limit": limit, "sort": "", "projection": projection},
        )
        if not self._is_current(my_epoch):
            return self._stale(my_epoch)

        normalized = normalize_find_result(result)
        self._apply_results(normalized)
        logger.info(
            "[EXECUTE] Query returned %d docs (%s ms)",
            len(normalized["documents"]), normalized["query_time_ms"],
        )

        if not projection and normalized["documents"]:
            self.schema_cache.merge_field_names(
                snap.connection_id, snap.database, snap.collection,
                extract_field_paths(normalized["documents"]),
            )
        if filter_text.strip() not in ("", "{}"):
            self._record_history(snap)
        self._refresh_projection_info()
        return ExecutionOutcome.COMPLETED

    async def _execute_script(self, snap: QuerySnapshot, my_epoch: int) -> ExecutionOutcome:
        script = wrap_script_for_output(snap.query)
        try:
            result = await self.collaborator.execute_script_with_database(
                snap.connection_id, snap.database, script,
            )
        except ScriptUnavailableError:
            available = (await self.collaborator.check_mongosh_available())[0]
            if not self._is_current(my_epoch):
                return self._stale(my_epoch)
            if not available:
                raise RuntimeError(MONGOSH_REQUIRED_MESSAGE) from None
            raise
        if not self._is_current(my_epoch):
            return self._stale(my_epoch)

        normalized = normalize_script_result(result)
        self._apply_results(normalized)
        if normalized["structured"]:
            logger.info("[EXECUTE] Mongosh query returned %d results", normalized["total"])
        else:
            logger.info("[EXECUTE] Mongosh query completed with raw output")

        if normalized["structured"] and normalized["documents"]:
            self.schema_cache.merge_field_names(
                snap.connection_id, snap.database, snap.collection,
                extract_field_paths(normalized["documents"]),
            )
        return ExecutionOutcome.COMPLETED

    def _apply_results(self, normalized: Dict[str, Any]) -> None:
        view = self.view
        view.documents = normalized["documents"]
        view.total = normalized["total"]
        view.query_time_ms = normalized["query_time_ms"]
        view.paging.total = normalized["total"]
        view.available_columns = available_columns(normalized["documents"])
        view.error = None
        view.error_summary = None
        view.loading = False
        view.state = ExecutionState.IDLE
        view.outcome = ExecutionOutcome.COMPLETED

    def _apply_failure(self, snap: QuerySnapshot, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        summary = get_error_summary(message)
        logger.error(
            "[EXECUTE] Query on %s.%s failed: %s | query=%s",
            snap.database, snap.collection, message, _preview(snap.query),
        )
        view = self.view
        view.documents = []
        view.total = 0
        view.paging.total = 0
        view.query_time_ms = None
        view.error = message
        view.error_summary = summary
        view.loading = False
        view.state = ExecutionState.IDLE
        view.outcome = ExecutionOutcome.FAILED

    def _record_history(self, snap: QuerySnapshot) -> None:
        if self.history_store is None:
            return
        self.history = self.history_store.add(snap.query, snap.database, snap.collection)

    # ---------------------- TIMEOUT / CANCEL ----------------------

    def _start_timeout(self, my_epoch: int) -> Optional[asyncio.TimerHandle]:
        seconds = self.settings.query_timeout_seconds
        if seconds <= 0:
            return None
        return asyncio.get_running_loop().call_later(seconds, self._on_timeout, my_epoch, seconds)

    def _on_timeout(self, my_epoch: int, seconds: float) -> None:
        if not self._is_current(my_epoch):
            return
        self._end_epoch(ExecutionOutcome.TIMED_OUT)
        message = (
            f"Query timed out after {seconds:g} seconds. "
            "You can increase the timeout in Settings."
        )
        logger.warning("[EXECUTE] Query timed out after %gs on %s.%s", seconds, self.database, self.collection)
        view = self.view
        view.loading = False
        view.state = ExecutionState.IDLE
        view.outcome = ExecutionOutcome.TIMED_OUT
        view.error = message
        view.error_summary = get_error_summary(message)

    def cancel_query(self) -> None:
        self._end_epoch(ExecutionOutcome.CANCELLED)
        self._size_bypass = False
        view = self.view
        view.size_warning = None
        view.loading = False
        view.state = ExecutionState.IDLE
        view.outcome = ExecutionOutcome.CANCELLED
        logger.info("[EXECUTE] Query cancelled")

    # ---------------------- SIZE WARNING ----------------------

    async def bypass_size_warning(self) -> ExecutionOutcome:
        """Run once past the response-size guard."""
        self._size_bypass = True
        self.view.size_warning = None
        return await self.execute_query()

    async def apply_suggested_page_size(self) -> ExecutionOutcome:
        warning = self.view.size_warning
        if warning is None:
            raise ValueError("No response size warning to resolve")
        self.set_user_limit(warning.suggestedPageSize)
        self.view.size_warning = None
        return await self.execute_query()

    def dismiss_size_warning(self) -> None:
        self.view.size_warning = None
        self.view.state = ExecutionState.IDLE
        self.view.outcome = ExecutionOutcome.CANCELLED

    # ---------------------- EXPLAIN ----------------------

    async def explain_query(self) -> Dict[str, Any]:
        query = self.view.query
        if classify_query(query) is not QueryKind.SIMPLE:
            raise ValueError(EXPLAIN_SIMPLE_ONLY_MESSAGE)
        return await self.collaborator.explain_query(
            self.connection_id, self.database, self.collection, parse_filter_from_query(query),
        )
