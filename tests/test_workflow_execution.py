"""
工作流执行测试
"""
import itertools

import pytest

from automation_engine.core.traversal import GraphTraversal
from automation_engine.exceptions import (
    MaxIterationsExceededError, RateLimitExceededError, WorkflowInactiveError, WorkflowNotFoundError
)
from automation_engine.integrations.actions import ActionDefinition
from automation_engine.integrations.event_bus import EXECUTION_EVENTS_TOPIC
from automation_engine.models.execution import ExecutionStatus, NodeStatus, WorkflowExecution

from conftest import build_workflow, chain


def age_workflow(**kwargs):
    return build_workflow(
        nodes=[
            {"id": "start", "type": "start"},
            {"id": "check", "type": "condition", "config": {
                "conditions": [{"expression": "age > 18", "next_node": "adult", "label": "adult"}],
                "default_next": "minor",
            }},
            {"id": "adult", "type": "set_variable", "config": {"variables": {"segment": "adult"}}},
            {"id": "minor", "type": "set_variable", "config": {"variables": {"segment": "minor"}}},
            {"id": "end", "type": "end", "config": {"output": {"segment": "{{segment}}"}}},
        ],
        connections=chain("start", "check") + [
            {"source": "adult", "target": "end"},
            {"source": "minor", "target": "end"},
        ],
        **kwargs
    )


@pytest.fixture
def visits(actions):
    """注册一个记录调用顺序的动作"""
    order = []

    def record(config, execution):
        order.append(config["name"])
        return {"recorded": config["name"]}

    actions.register_action(ActionDefinition(action_type="record"), record)
    return order


def record_node(node_id):
    return {"id": node_id, "type": "action", "action_type": "record", "config": {"name": node_id}}


class TestExecute:
    """引擎执行测试"""

    @pytest.mark.asyncio
    async def test_age_branching_end_to_end(self, engine):
        execution = await engine.execute(age_workflow(), {"age": 20})

        assert execution.status == ExecutionStatus.COMPLETED
        assert set(execution.node_states) == {"start", "check", "adult", "end"}
        assert execution.node_states["end"]["output"] == {"segment": "adult"}
        assert execution.completed_at is not None
        assert execution.error_message is None

    @pytest.mark.asyncio
    async def test_age_branching_default_path(self, engine):
        execution = await engine.execute(age_workflow(), {"age": 10})

        assert execution.status == ExecutionStatus.COMPLETED
        assert set(execution.node_states) == {"start", "check", "minor", "end"}
        assert execution.variables["segment"] == "minor"

    @pytest.mark.asyncio
    async def test_inactive_workflow_rejected(self, engine):
        workflow = age_workflow(status="draft")

        with pytest.raises(WorkflowInactiveError):
            await engine.execute(workflow, {"age": 20})
        assert engine.execution_repo.executions == {}

    @pytest.mark.asyncio
    async def test_rate_limit(self, engine):
        workflow = age_workflow(settings={"max_executions_per_hour": 2})

        await engine.execute(workflow, {"age": 20})
        await engine.execute(workflow, {"age": 20})
        with pytest.raises(RateLimitExceededError):
            await engine.execute(workflow, {"age": 20})
        assert len(engine.execution_repo.executions) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_window_resets(self, engine, clock):
        workflow = age_workflow(settings={"max_executions_per_hour": 1})

        await engine.execute(workflow, {"age": 20})
        clock.advance(3600)
        execution = await engine.execute(workflow, {"age": 20})
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_variables_seeded_from_defaults_and_trigger(self, engine):
        workflow = age_workflow(variables={"age": 5, "source": "default"})
        execution = await engine.execute(workflow, {"age": 30}, {"trigger_type": "webhook"})

        assert execution.variables["source"] == "default"
        assert execution.variables["age"] == 30
        assert execution.trigger_type == "webhook"
        assert execution.trigger_data == {"age": 30}

    @pytest.mark.asyncio
    async def test_connection_conditions_gate_successors(self, engine, visits):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, record_node("high"), record_node("low")],
            connections=[
                {"source": "start", "target": "high", "condition": "score > 5"},
                {"source": "start", "target": "low", "condition": "score <= 5"},
            ],
        )
        execution = await engine.execute(workflow, {"score": 9})

        assert visits == ["high"]
        assert "low" not in execution.node_states

    @pytest.mark.asyncio
    async def test_literal_connection_conditions(self, engine, visits):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, record_node("on"), record_node("off"), record_node("open")],
            connections=[
                {"source": "start", "target": "on", "condition": True},
                {"source": "start", "target": "off", "condition": False},
                {"source": "start", "target": "open", "condition": ""},
            ],
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.COMPLETED
        assert visits == ["on", "open"]

    @pytest.mark.asyncio
    async def test_trigger_entry_node(self, engine, visits):
        workflow = build_workflow(
            nodes=[{"id": "webhook", "type": "trigger"}, record_node("act"), {"id": "end", "type": "end"}],
            connections=chain("webhook", "act", "end"),
        )
        execution = await engine.execute(workflow, {"source": "webhook"})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node_states["webhook"]["output"] == {"message": "Workflow started"}
        assert visits == ["act"]
        assert execution.is_node_completed("end")

    @pytest.mark.asyncio
    async def test_successors_follow_declaration_order(self, engine, visits):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, record_node("b"), record_node("a"), record_node("c")],
            connections=[
                {"source": "start", "target": "b"},
                {"source": "start", "target": "a"},
                {"source": "b", "target": "c"},
            ],
        )
        await engine.execute(workflow)
        assert visits == ["b", "a", "c"]

    @pytest.mark.asyncio
    async def test_next_node_jumps_ahead_of_queue(self, engine, visits):
        workflow = build_workflow(
            nodes=[
                {"id": "start", "type": "start"},
                {"id": "route", "type": "switch", "config": {
                    "value": "{{kind}}",
                    "cases": [{"value": "vip", "next_node": "vip"}],
                }},
                record_node("queued"),
                record_node("vip"),
            ],
            connections=chain("start", "route") + [{"source": "route", "target": "queued"}],
        )
        await engine.execute(workflow, {"kind": "vip"})
        assert visits == ["vip", "queued"]

    @pytest.mark.asyncio
    async def test_merge_waits_for_slower_branch(self, engine):
        workflow = build_workflow(
            nodes=[
                {"id": "start", "type": "start"},
                {"id": "a", "type": "set_variable", "config": {"variables": {"a": 1}}},
                {"id": "b", "type": "set_variable", "config": {"variables": {"b": 1}}},
                {"id": "b2", "type": "set_variable", "config": {"variables": {"b2": 1}}},
                {"id": "join", "type": "merge", "config": {"required_inputs": ["a", "b2"]}},
                {"id": "end", "type": "end"},
            ],
            connections=[
                {"source": "start", "target": "a"},
                {"source": "start", "target": "b"},
                {"source": "a", "target": "join"},
                {"source": "b", "target": "b2"},
                {"source": "b2", "target": "join"},
                {"source": "join", "target": "end"},
            ],
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node_status("join") == NodeStatus.COMPLETED.value
        assert set(execution.node_states["join"]["output"]["merged_data"]) == {"a", "b2"}
        assert execution.is_node_completed("end")

    @pytest.mark.asyncio
    async def test_unsatisfied_merge_is_not_scheduled(self, engine):
        workflow = build_workflow(
            nodes=[
                {"id": "start", "type": "start"},
                {"id": "join", "type": "merge", "config": {"required_inputs": ["never"]}},
            ],
            connections=chain("start", "join"),
        )
        execution = await engine.execute(workflow)

        assert execution.node_status("join") == NodeStatus.WAITING.value
        assert execution.status == ExecutionStatus.COMPLETED
        assert engine.scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_unbounded_cycle_fails_execution(self, engine):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, {"id": "spin", "type": "merge"}],
            connections=chain("start", "spin") + [{"source": "spin", "target": "spin"}],
            settings={"retry_on_failure": False},
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Maximum iterations exceeded: 200"

    @pytest.mark.asyncio
    async def test_revisited_plain_nodes_are_skipped(self, engine, visits):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, record_node("a"), record_node("b")],
            connections=chain("start", "a", "b") + [{"source": "b", "target": "a"}],
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.COMPLETED
        assert visits == ["a", "b"]

    @pytest.mark.asyncio
    async def test_timeout_between_nodes(self, engine):
        ticks = itertools.count(step=10)
        engine.traversal.monotonic = lambda: next(ticks)
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            connections=chain("start", "end"),
            settings={"timeout_seconds": 15, "retry_on_failure": False},
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Workflow execution timeout after 15.0 seconds"
        assert execution.is_node_completed("start")
        assert "end" not in execution.node_states

    @pytest.mark.asyncio
    async def test_node_failure_records_error(self, engine):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, {"id": "act", "type": "action", "action_type": "missing"}],
            connections=chain("start", "act"),
            settings={"retry_on_failure": False},
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Node 'act' execution failed: Unknown action type: missing"
        assert execution.node_status("act") == NodeStatus.FAILED.value
        assert any(log["message"] == "Workflow execution failed" for log in execution.logs)

        stored = await engine.execution_repo.get(execution.execution_id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error_message == execution.error_message

    @pytest.mark.asyncio
    async def test_unknown_node_type_fails_execution(self, engine):
        workflow = build_workflow(
            nodes=[{"id": "start", "type": "start"}, {"id": "odd", "type": "teleport"}],
            connections=chain("start", "odd"),
            settings={"retry_on_failure": False},
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Unknown node type: teleport"

    @pytest.mark.asyncio
    async def test_cancellation_is_checked_between_nodes(self, engine, actions, visits):
        async def cancel(config, execution):
            assert [e.execution_id for e in engine.get_running_executions()] == [execution.execution_id]
            await engine.cancel_execution(execution.execution_id)
            return {}

        actions.register_action(ActionDefinition(action_type="cancel"), cancel)
        workflow = build_workflow(
            nodes=[
                {"id": "start", "type": "start"},
                {"id": "stop", "type": "action", "action_type": "cancel"},
                record_node("after"),
            ],
            connections=chain("start", "stop", "after"),
        )
        execution = await engine.execute(workflow)

        assert execution.status == ExecutionStatus.CANCELLED
        assert visits == []
        assert engine.get_running_executions() == []

    @pytest.mark.asyncio
    async def test_events_published(self, engine, event_bus):
        execution = await engine.execute(age_workflow(), {"age": 20})

        events = [event.payload for event in event_bus.events_for(EXECUTION_EVENTS_TOPIC)]
        assert [event["event_type"] for event in events] == ["workflow_started", "workflow_completed"]
        assert all(event["execution_id"] == execution.execution_id for event in events)

    @pytest.mark.asyncio
    async def test_execution_persisted_and_registry_cleared(self, engine):
        execution = await engine.execute(age_workflow(), {"age": 20})

        stored = await engine.execution_repo.get(execution.execution_id)
        assert stored.to_dict() == execution.to_dict()
        assert engine.running == {}

    @pytest.mark.asyncio
    async def test_execute_by_id(self, engine):
        workflow = age_workflow()
        await engine.workflow_repo.save(workflow)

        execution = await engine.execute_workflow_by_id(workflow.id, {"age": 40})
        assert execution.status == ExecutionStatus.COMPLETED

        with pytest.raises(WorkflowNotFoundError):
            await engine.execute_workflow_by_id("nope")

    @pytest.mark.asyncio
    async def test_execution_log_level_from_settings(self, engine):
        quiet = await engine.execute(age_workflow(settings={"log_level": "error"}), {"age": 20})
        verbose = await engine.execute(age_workflow(id="wf-2", settings={"log_level": "debug"}), {"age": 20})

        assert quiet.logs == []
        assert any(log["message"] == "Executing node: start" for log in verbose.logs)


class TestGraphTraversal:
    """图遍历测试"""

    def test_start_nodes_by_type(self):
        workflow = build_workflow(
            nodes=[{"id": "a", "type": "end"}, {"id": "t", "type": "trigger"}, {"id": "s", "type": "start"}],
        )
        assert [n.id for n in GraphTraversal.find_start_nodes(workflow)] == ["t", "s"]

    def test_start_nodes_fallback_to_roots(self):
        workflow = build_workflow(
            nodes=[{"id": "a", "type": "end"}, {"id": "b", "type": "end"}, {"id": "c", "type": "end"}],
            connections=[{"source": "a", "target": "b"}],
        )
        assert [n.id for n in GraphTraversal.find_start_nodes(workflow)] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_cycle_raises_max_iterations(self, engine):
        workflow = build_workflow(
            nodes=[{"id": "m1", "type": "merge"}, {"id": "m2", "type": "merge"}],
            connections=[{"source": "m1", "target": "m2"}, {"source": "m2", "target": "m1"}],
        )
        execution = WorkflowExecution(workflow_id=workflow.id)

        with pytest.raises(MaxIterationsExceededError):
            await engine.traversal.run(workflow, execution, [workflow.get_node("m1")])
