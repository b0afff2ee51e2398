"""
集成组件测试：动作分发器、事件总线、信号存储
"""
import pytest

from automation_engine.integrations.actions import ActionDefinition, BuiltinActions
from automation_engine.integrations.event_bus import Event
from automation_engine.integrations.signals import InMemorySignalStore
from automation_engine.models.execution import NodeResult, NodeStatus


SCHEMA = {
    "type": "object",
    "properties": {
        "to": {"type": "string"},
        "retries": {"type": "number"},
    },
    "required": ["to"],
}


class TestLocalActionDispatcher:
    """本地动作分发器测试"""

    @pytest.mark.asyncio
    async def test_unknown_action(self, actions, execution):
        result = await actions.execute_action("send_sms", {}, execution)

        assert result.is_failed
        assert result.error == "Unknown action type: send_sms"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("returned,expected", [
        (None, {}),
        ({"sent": 1}, {"sent": 1}),
        ("queued", {"result": "queued"}),
    ])
    async def test_return_values_wrapped(self, actions, execution, returned, expected):
        actions.register_action(ActionDefinition(action_type="send"), lambda config, execution: returned)

        result = await actions.execute_action("send", {}, execution)

        assert result.status == NodeStatus.COMPLETED
        assert result.output == expected

    @pytest.mark.asyncio
    async def test_async_handler_result_passed_through(self, actions, execution):
        async def handler(config, execution):
            return NodeResult.waiting("Waiting for provider")

        actions.register_action(ActionDefinition(action_type="provider"), handler)
        result = await actions.execute_action("provider", {}, execution)

        assert result.is_waiting

    @pytest.mark.asyncio
    async def test_parameter_validation(self, actions, execution):
        actions.register_action(ActionDefinition(action_type="email", parameters_schema=SCHEMA), lambda c, e: {})

        missing = await actions.execute_action("email", {"retries": 2}, execution)
        wrong_type = await actions.execute_action("email", {"to": "a@b.c", "retries": True}, execution)
        valid = await actions.execute_action("email", {"to": "a@b.c", "retries": 2}, execution)

        assert missing.error == "Invalid parameters for action email: Missing required parameter: to"
        assert wrong_type.error == "Invalid parameters for action email: Parameter retries must be a number"
        assert valid.status == NodeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_handler_exception_propagates(self, actions, execution):
        def handler(config, execution):
            raise RuntimeError("provider down")

        actions.register_action(ActionDefinition(action_type="flaky"), handler)

        with pytest.raises(RuntimeError, match="provider down"):
            await actions.execute_action("flaky", {}, execution)

    def test_registry(self, actions):
        with pytest.raises(ValueError):
            actions.register_action(ActionDefinition(action_type="bad"), "not callable")

        BuiltinActions.register_all(actions)
        assert [a.action_type for a in actions.list_actions()] == ["log_message"]

        actions.unregister_action("log_message")
        assert actions.get_action("log_message") is None

    @pytest.mark.asyncio
    async def test_log_action_writes_execution_log(self, actions, execution):
        BuiltinActions.register_all(actions)

        result = await actions.execute_action("log_message", {"message": "hi", "level": "warning"}, execution)

        assert result.output == {"logged": "hi", "level": "warning"}
        assert execution.logs[-1]["level"] == "warning"
        assert execution.logs[-1]["message"] == "hi"


class TestEventBus:
    """事件总线测试"""

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_subscribers(self, event_bus):
        received = []

        def on_sync(event: Event):
            received.append(("sync", event.payload))

        async def on_async(event: Event):
            received.append(("async", event.payload))

        await event_bus.subscribe("orders", on_sync)
        await event_bus.subscribe("orders", on_async)
        await event_bus.publish("orders", {"id": 1})
        await event_bus.publish("other", {"id": 2})

        assert sorted(received) == [("async", {"id": 1}), ("sync", {"id": 1})]
        assert [event.payload for event in event_bus.events_for("orders")] == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_subscriber_error_is_isolated(self, event_bus):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        await event_bus.subscribe("orders", broken)
        await event_bus.subscribe("orders", received.append)
        await event_bus.publish("orders", {"id": 1})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, event_bus):
        received = []
        await event_bus.subscribe("orders", received.append)
        await event_bus.unsubscribe("orders", received.append)
        await event_bus.publish("orders", {"id": 1})

        assert received == []
        assert "orders" not in event_bus.subscribers


class TestSignalStore:
    """信号存储测试"""

    @pytest.mark.asyncio
    async def test_put_and_pop(self):
        store = InMemorySignalStore()
        payload = {"approved": True}

        await store.put("exec-1", "approval", payload)
        payload["approved"] = False

        assert await store.pop("exec-1", "other") is None
        assert await store.pop("exec-1", "approval") == {"approved": True}
        assert await store.pop("exec-1", "approval") is None
