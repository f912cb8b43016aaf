import asyncio

import pytest

from collaborators import ScriptUnavailableError
from execution_controller import (
    MONGOSH_REQUIRED_MESSAGE,
    READ_ONLY_MESSAGE,
    ExecutionOutcome,
    ExecutionState,
)
from profile_estimator import DocumentProfile


def run(coro):
    return asyncio.run(coro)


def find_calls(fake):
    return [call for call in fake.calls if call[0] == "find"]


# ---------------------- SIMPLE PATH ----------------------


def test_simple_find_populates_view(fake, make_controller):
    fake.find_result = {
        "documents": ['{"_id": 1, "name": "Ada", "address": {"city": "London"}}', "not json"],
        "total": 2,
        "queryTimeMs": 4,
    }
    controller = make_controller()

    outcome = run(controller.execute_query())

    assert outcome is ExecutionOutcome.COMPLETED
    view = controller.view
    assert view.state is ExecutionState.IDLE
    assert view.loading is False
    assert view.total == 2
    assert view.query_time_ms == 4
    assert view.documents[0]["name"] == "Ada"
    assert view.documents[1]["_raw"] == "not json"
    assert "_parseError" in view.documents[1]
    assert view.available_columns == ["_id", "_parseError", "_raw", "address", "name"]

    _, filter_text, options = find_calls(fake)[0]
    assert filter_text == "{}"
    assert options == {"skip": 0, "limit": 50, "sort": "", "projection": ""}


def test_unprojected_results_extend_known_field_names(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1, "address": {"city": "London"}}'], "total": 1}
    controller = make_controller()

    run(controller.execute_query())

    names = controller.schema_cache.get_field_names("conn1", "app", "users")
    assert {"_id", "address", "address.city"} <= names


def test_adaptive_page_size_for_large_documents(fake, make_controller):
    fake.profile = DocumentProfile(avgDocSizeBytes=300_000, docCount=1000, fieldCount=10)
    controller = make_controller()

    outcome = run(controller.execute_query())

    assert outcome is ExecutionOutcome.COMPLETED
    assert find_calls(fake)[0][2]["limit"] == 33
    paging = controller.view.paging
    assert paging.effective_limit == 33
    assert paging.user_limit == 50
    assert paging.is_adaptive is True
    assert paging.adaptive_info == "Page size reduced to 33 (documents average 300 KB each)."


def test_profile_failure_means_no_adaptation(fake, make_controller):
    fake.profile_error = RuntimeError("collStats not permitted")
    controller = make_controller()

    outcome = run(controller.execute_query())

    assert outcome is ExecutionOutcome.COMPLETED
    assert find_calls(fake)[0][2]["limit"] == 50
    assert controller.view.paging.is_adaptive is False


def test_health_warning_for_very_large_documents(fake, make_controller):
    fake.profile = DocumentProfile(avgDocSizeBytes=600_000, fieldCount=5)
    controller = make_controller()

    run(controller.execute_query())

    assert controller.view.health_warnings == [
        "Documents average 600 KB each. Consider reducing page size or adding a projection."
    ]


# ---------------------- RESPONSE-SIZE GUARD ----------------------


@pytest.fixture
def oversized(fake, make_controller):
    fake.profile = DocumentProfile(avgDocSizeBytes=300_000, docCount=1000, fieldCount=10)
    return make_controller(max_page_payload_mb=100)


def test_size_warning_holds_the_query(fake, oversized):
    outcome = run(oversized.execute_query())

    assert outcome is ExecutionOutcome.WARNING
    assert oversized.view.state is ExecutionState.WARNING_PENDING
    assert oversized.view.size_warning.estimatedMB == 15.0
    assert oversized.view.size_warning.suggestedPageSize == 33
    assert find_calls(fake) == []


def test_apply_suggested_page_size_runs_smaller_page(fake, oversized):
    run(oversized.execute_query())

    outcome = run(oversized.apply_suggested_page_size())

    assert outcome is ExecutionOutcome.COMPLETED
    assert oversized.view.paging.user_limit == 33
    assert oversized.view.size_warning is None
    assert find_calls(fake)[0][2]["limit"] == 33


def test_bypass_is_single_use(fake, oversized):
    run(oversized.execute_query())

    assert run(oversized.bypass_size_warning()) is ExecutionOutcome.COMPLETED
    assert find_calls(fake)[0][2]["limit"] == 50

    assert run(oversized.execute_query()) is ExecutionOutcome.WARNING
    assert len(find_calls(fake)) == 1


def test_dismiss_size_warning(oversized):
    run(oversized.execute_query())

    oversized.dismiss_size_warning()

    assert oversized.view.size_warning is None
    assert oversized.view.state is ExecutionState.IDLE
    assert oversized.view.outcome is ExecutionOutcome.CANCELLED


def test_apply_suggested_page_size_without_warning(make_controller):
    controller = make_controller()
    with pytest.raises(ValueError):
        run(controller.apply_suggested_page_size())


def test_complex_queries_skip_the_size_guard(fake, oversized):
    fake.script_result = {"output": '[{"_id": 1}]', "exitCode": 0, "error": ""}
    oversized.set_query("db.users.aggregate([{ $match: {} }])")

    outcome = run(oversized.execute_query())

    assert outcome is ExecutionOutcome.COMPLETED
    assert "script" in fake.methods_called()


# ---------------------- READ-ONLY ----------------------


def test_read_only_connection_blocks_writes(fake, make_controller):
    controller = make_controller(read_only=True)
    controller.set_query("db.users.insertOne({ name: 'x' })")
    fake.calls.clear()

    outcome = run(controller.execute_query())

    assert outcome is ExecutionOutcome.BLOCKED
    assert controller.epoch == 0
    assert controller.view.error == READ_ONLY_MESSAGE
    assert fake.calls == []


def test_read_only_connection_allows_reads(fake, make_controller):
    controller = make_controller(read_only=True)
    controller.set_query('db.users.find({"age": 30})')

    assert run(controller.execute_query()) is ExecutionOutcome.COMPLETED


# ---------------------- EPOCHS ----------------------


def test_epoch_increases_with_every_execution(make_controller):
    controller = make_controller()
    seen = []
    for _ in range(3):
        run(controller.execute_query())
        seen.append(controller.epoch)
    controller.cancel_query()
    seen.append(controller.epoch)

    assert seen == [1, 2, 3, 4]


def test_two_executes_then_cancel_leaves_view_idle(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1}'], "total": 1}
    controller = make_controller()

    async def scenario():
        fake.find_gates = [asyncio.Event(), asyncio.Event()]
        gates = list(fake.find_gates)
        first = asyncio.ensure_future(controller.execute_query())
        second = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        controller.cancel_query()
        for gate in gates:
            gate.set()
        return await asyncio.gather(first, second)

    first, second = run(scenario())

    assert first is ExecutionOutcome.STALE
    assert second is ExecutionOutcome.CANCELLED
    assert controller.view.state is ExecutionState.IDLE
    assert controller.view.outcome is ExecutionOutcome.CANCELLED
    assert controller.view.documents == []
    assert controller.view.loading is False


def test_newest_execution_wins(fake, make_controller):
    fake.find_results = [
        {"documents": ['{"_id": "old"}'], "total": 1},
        {"documents": ['{"_id": "new"}'], "total": 1},
    ]
    controller = make_controller()

    async def scenario():
        fake.find_gates = [asyncio.Event(), asyncio.Event()]
        old_gate, new_gate = fake.find_gates
        old = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        new = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        new_gate.set()
        new_outcome = await new
        old_gate.set()
        return await old, new_outcome

    old_outcome, new_outcome = run(scenario())

    assert new_outcome is ExecutionOutcome.COMPLETED
    assert old_outcome is ExecutionOutcome.STALE
    assert controller.view.documents == [{"_id": "new"}]


def test_timeout_resolves_view_and_drops_late_result(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1}'], "total": 1}
    controller = make_controller(query_timeout_seconds=0.05)

    async def scenario():
        gate = asyncio.Event()
        fake.find_gates = [gate]
        task = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0.2)
        snapshot = (controller.view.outcome, controller.view.error, controller.view.loading)
        gate.set()
        return snapshot, await task

    (outcome, error, loading), late = run(scenario())

    assert outcome is ExecutionOutcome.TIMED_OUT
    assert error == "Query timed out after 0.05 seconds. You can increase the timeout in Settings."
    assert loading is False
    assert late is ExecutionOutcome.TIMED_OUT
    assert controller.view.documents == []
    assert controller.view.error_summary == "Operation timed out"


def test_collaborator_failure_clears_results(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1}'], "total": 1}
    controller = make_controller()
    run(controller.execute_query())

    fake.find_error = RuntimeError("connect ECONNREFUSED 127.0.0.1:27017")
    outcome = run(controller.execute_query())

    assert outcome is ExecutionOutcome.FAILED
    assert controller.view.documents == []
    assert controller.view.total == 0
    assert controller.view.error == "connect ECONNREFUSED 127.0.0.1:27017"
    assert controller.view.error_summary == "Unable to connect to MongoDB server"


def test_changing_collection_drops_in_flight_results(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1}'], "total": 1}
    controller = make_controller()

    async def scenario():
        gate = asyncio.Event()
        fake.find_gates = [gate]
        task = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        controller.set_collection("orders")
        gate.set()
        return await task

    assert run(scenario()) is ExecutionOutcome.CANCELLED
    assert controller.collection == "orders"
    assert controller.view.query == 'db.getCollection("orders").find({})'
    assert controller.view.documents == []


def test_timeout_after_cancel_is_ignored(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": 1}'], "total": 1}
    controller = make_controller(query_timeout_seconds=0.05)

    async def scenario():
        gate = asyncio.Event()
        fake.find_gates = [gate]
        task = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        controller.cancel_query()
        await asyncio.sleep(0.2)
        snapshot = (controller.view.outcome, controller.view.error)
        gate.set()
        return snapshot, await task

    (outcome, error), late = run(scenario())

    assert outcome is ExecutionOutcome.CANCELLED
    assert error is None
    assert late is ExecutionOutcome.CANCELLED
    assert controller.view.documents == []


def test_superseded_profile_fetch_is_dropped(fake, make_controller):
    fake.find_result = {"documents": ['{"_id": "new"}'], "total": 1}
    controller = make_controller()

    async def scenario():
        gate = asyncio.Event()
        fake.profile_gates = [gate]
        old = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        assert controller.view.state is ExecutionState.ESTIMATING
        new_outcome = await controller.execute_query()
        gate.set()
        return await old, new_outcome

    old_outcome, new_outcome = run(scenario())

    assert new_outcome is ExecutionOutcome.COMPLETED
    assert old_outcome is ExecutionOutcome.STALE
    assert len(find_calls(fake)) == 1
    assert controller.view.documents == [{"_id": "new"}]
    assert controller.view.state is ExecutionState.IDLE
    assert controller.view.outcome is ExecutionOutcome.COMPLETED


def test_idle_cancels_and_collection_switches_keep_no_resolutions(make_controller):
    controller = make_controller()

    for _ in range(500):
        controller.cancel_query()
    for i in range(100):
        controller.set_collection(f"coll{i}")

    assert controller.epoch == 600
    assert controller._resolutions == {}


def test_cancelled_size_warning_keeps_no_resolution(fake, oversized):
    assert run(oversized.execute_query()) is ExecutionOutcome.WARNING
    oversized.cancel_query()

    assert oversized._resolutions == {}


def test_finished_executions_release_their_resolution(fake, make_controller):
    controller = make_controller()

    async def scenario():
        gate = asyncio.Event()
        fake.find_gates = [gate]
        task = asyncio.ensure_future(controller.execute_query())
        await asyncio.sleep(0)
        controller.cancel_query()
        assert len(controller._resolutions) == 1
        gate.set()
        return await task

    assert run(scenario()) is ExecutionOutcome.CANCELLED
    controller.cancel_query()
    assert controller._resolutions == {}


# ---------------------- SHELL PATH ----------------------


def test_script_results_are_normalized(fake, make_controller):
    fake.script_result = {
        "output": "[\n  { _id: ObjectId('65a1b2c3d4e5f6a7b8c9d0e1'), total: 3 }\n]",
        "exitCode": 0,
        "error": "",
    }
    controller = make_controller()
    controller.set_query("db.users.aggregate([{ $count: 'total' }])")

    assert run(controller.execute_query()) is ExecutionOutcome.COMPLETED
    assert controller.view.documents == [
        {"_id": {"$oid": "65a1b2c3d4e5f6a7b8c9d0e1"}, "total": 3}
    ]
    assert "total" in controller.schema_cache.get_field_names("conn1", "app", "users")


def test_unparseable_script_output_becomes_single_result(fake, make_controller):
    fake.script_result = {"output": "hello world", "exitCode": 0, "error": ""}
    controller = make_controller()
    controller.set_query("print('hello world')")

    run(controller.execute_query())

    assert controller.view.documents == [{"_result": "hello world"}]
    assert controller.view.total == 1


def test_trailing_write_is_wrapped_for_output(fake, make_controller):
    fake.script_result = {"output": "{ acknowledged: true }", "exitCode": 0, "error": ""}
    controller = make_controller()
    controller.set_query("db.users.insertOne({ a: 1 })")

    run(controller.execute_query())

    assert ("script", "printjson(db.users.insertOne({ a: 1 }))") in fake.calls
    assert controller.view.documents == [{"acknowledged": True}]


def test_script_error_fails_execution(fake, make_controller):
    fake.script_result = {"output": "", "exitCode": 1, "error": "ReferenceError: foo is not defined"}
    controller = make_controller()
    controller.set_query("foo.bar()")

    assert run(controller.execute_query()) is ExecutionOutcome.FAILED
    assert controller.view.error == "ReferenceError: foo is not defined"
    assert controller.view.error_summary == "Script execution error"


def test_missing_shell_reports_install_hint(fake, make_controller):
    fake.script_error = ScriptUnavailableError("mongosh or mongo shell not found")
    fake.mongosh = (False, "")
    controller = make_controller()
    controller.set_query("db.users.aggregate([])")

    assert run(controller.execute_query()) is ExecutionOutcome.FAILED
    assert controller.view.error == MONGOSH_REQUIRED_MESSAGE
    assert controller.view.error_summary == "mongosh is not installed"


# ---------------------- HISTORY ----------------------


def test_history_records_filtered_queries_once(fake, make_controller, history_store):
    controller = make_controller()
    query = 'db.getCollection("users").find({"age": 30})'
    controller.set_query(query)

    run(controller.execute_query())
    run(controller.execute_query())

    stored = history_store.load()
    assert [item["query"] for item in stored] == [query]
    assert stored[0]["collection"] == "app.users"


def test_history_skips_empty_filters(make_controller, history_store):
    controller = make_controller()

    run(controller.execute_query())

    assert history_store.load() == []


# ---------------------- AUTO-PROJECTION ----------------------


@pytest.fixture
def wide(fake, make_controller):
    fake.profile = DocumentProfile(
        avgDocSizeBytes=2000,
        docCount=10,
        fieldCount=60,
        topFields=[f"f{i:02d}" for i in range(60)],
    )
    fake.find_result = {"documents": ['{"_id": 1, "f00": 1}'], "total": 1}
    return make_controller()


def test_wide_collection_is_auto_projected_once(fake, wide):
    run(wide.execute_query())

    projection = find_calls(fake)[0][2]["projection"]
    assert projection.startswith('{"f00": 1')
    assert wide.view.query.startswith('db.getCollection("users").find({}, {"f00": 1')
    assert wide.view.auto_projection_info == {"fieldCount": 15, "totalFields": 60}
    marker = wide.projection.marker

    wide.set_query('db.getCollection("users").find({})')
    run(wide.execute_query())

    assert find_calls(fake)[1][2]["projection"] == ""
    assert wide.projection.marker == marker


def test_projected_results_do_not_extend_field_names(fake, wide):
    run(wide.execute_query())

    assert wide.schema_cache.get_field_names("conn1", "app", "users") is None


def test_show_all_fields_opts_out(fake, wide):
    run(wide.execute_query())

    query = wide.show_all_fields()

    assert query == 'db.getCollection("users").find({})'
    assert wide.projection.opted_out
    assert wide.view.auto_projection_info is None
    run(wide.execute_query())
    assert find_calls(fake)[1][2]["projection"] == ""


def test_new_collection_resets_projection_marker(wide):
    run(wide.execute_query())

    wide.set_collection("orders")

    assert wide.projection.marker == ""


# ---------------------- EDITOR / EXPLAIN ----------------------


def test_set_query_validates_without_event_loop(make_controller):
    controller = make_controller()

    controller.set_query('{"age": {"$gtt": 5}}')

    messages = [d.message for d in controller.view.diagnostics]
    assert 'Unknown operator "$gtt" - did you mean "$gt"?' in messages


def test_set_query_debounces_inside_event_loop(make_controller):
    controller = make_controller(validation_debounce_ms=10)
    controller.schema_cache.merge_field_names("conn1", "app", "users", {"name"})

    async def scenario():
        controller.set_query('{"nmae": 1}')
        pending = controller.validator.pending
        await asyncio.sleep(0.1)
        return pending

    assert run(scenario()) is True
    assert [d.message for d in controller.view.diagnostics] == ["Unknown field 'nmae'"]


def test_set_user_limit_resets_skip(make_controller):
    controller = make_controller()
    controller.set_skip(100)

    controller.set_user_limit(20)

    assert controller.view.paging.skip == 0
    assert controller.view.paging.effective_limit == 20


def test_explain_simple_query(fake, make_controller):
    controller = make_controller()
    controller.set_query('db.users.find({"age": {"$gt": 30}})')

    result = run(controller.explain_query())

    assert result == fake.explain_result
    assert ("explain", '{"age": {"$gt": 30}}') in fake.calls


def test_explain_rejects_complex_query(make_controller):
    controller = make_controller()
    controller.set_query("db.users.aggregate([])")

    with pytest.raises(ValueError):
        run(controller.explain_query())
