"""
工作流服务测试
"""
import pytest
from datetime import timedelta

from workflow_automation.models import WorkflowStatus, Connection
from workflow_automation.exceptions import (
    WorkflowNotFoundError, WorkflowValidationError, NodeConfigError
)

from conftest import DOMAIN


WAKE_UP = """
workflow:
  name: Wake up
  enabled: true
  nodes:
    - id: alarm
      type: timer
      config: {time: "07:00", interval: day, triggerData: {scene: morning}}
      connections: [lamp]
    - id: press
      type: button
      connections: [lamp]
    - id: lamp
      type: device_control
      config: {deviceId: lamp-1, action: toggle}
"""


class TestWorkflowLifecycle:
    """工作流生命周期"""

    @pytest.mark.asyncio
    async def test_workflow_ids_are_monotonic_per_domain(self, service):
        first = await service.create_workflow(DOMAIN, "first")
        second = await service.create_workflow(DOMAIN, "second")
        other = await service.create_workflow("office", "other")

        assert (first.workflow_id, second.workflow_id, other.workflow_id) == (1, 2, 1)
        assert first.status == WorkflowStatus.INACTIVE
        assert not first.enabled

    @pytest.mark.asyncio
    async def test_get_missing_workflow(self, service):
        with pytest.raises(WorkflowNotFoundError):
            await service.get_workflow(DOMAIN, 9)

    @pytest.mark.asyncio
    async def test_enable_registers_and_disable_removes_timers(self, service, timer_repo):
        workflow = await service.create_workflow(DOMAIN, "lights")
        await service.add_node(DOMAIN, workflow.workflow_id, "timer", config={"time": "07:00", "interval": "day"})
        assert await timer_repo.count() == 0

        enabled = await service.set_enabled(DOMAIN, workflow.workflow_id, True)
        assert enabled.status == WorkflowStatus.ACTIVE
        assert await timer_repo.count() == 1

        disabled = await service.set_enabled(DOMAIN, workflow.workflow_id, False)
        assert disabled.status == WorkflowStatus.INACTIVE
        assert await timer_repo.count() == 0

    @pytest.mark.asyncio
    async def test_update_workflow_syncs_timers(self, service, timer_repo):
        workflow = await service.create_workflow(DOMAIN, "lights")
        await service.add_node(DOMAIN, workflow.workflow_id, "timer", config={"interval": "minute"})

        updated = await service.update_workflow(DOMAIN, workflow.workflow_id, enabled=True, name="renamed")
        assert updated.name == "renamed"
        assert await timer_repo.count() == 1

        with pytest.raises(WorkflowValidationError, match="Unknown workflow fields"):
            await service.update_workflow(DOMAIN, workflow.workflow_id, color="blue")

    @pytest.mark.asyncio
    async def test_delete_workflow_cascades(self, service, node_repo, timer_repo):
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        assert await timer_repo.count() == 1

        assert await service.delete_workflow(DOMAIN, workflow.workflow_id) is True
        assert await node_repo.list_by_workflow(DOMAIN, workflow.workflow_id) == []
        assert await timer_repo.count() == 0
        assert await service.delete_workflow(DOMAIN, workflow.workflow_id) is False

    @pytest.mark.asyncio
    async def test_delete_domain(self, service, workflow_repo, timer_repo):
        await service.import_definition(DOMAIN, WAKE_UP)
        await service.create_workflow(DOMAIN, "empty")
        await service.create_workflow("office", "kept")

        assert await service.delete_domain(DOMAIN) == 2
        assert await workflow_repo.list(DOMAIN) == []
        assert len(await workflow_repo.list("office")) == 1
        assert await timer_repo.count() == 0


class TestNodes:
    """节点管理"""

    @pytest.mark.asyncio
    async def test_node_ids_are_monotonic(self, service):
        workflow = await service.create_workflow(DOMAIN, "flow")
        start = await service.add_node(DOMAIN, workflow.workflow_id, "start")
        end = await service.add_node(DOMAIN, workflow.workflow_id, "end")
        assert (start.node_id, end.node_id) == (1, 2)

    @pytest.mark.asyncio
    async def test_config_is_validated_on_create(self, service):
        workflow = await service.create_workflow(DOMAIN, "flow")
        with pytest.raises(NodeConfigError):
            await service.add_node(DOMAIN, workflow.workflow_id, "receiver", config={})
        with pytest.raises(WorkflowValidationError, match="Unknown node type"):
            await service.add_node(DOMAIN, workflow.workflow_id, "teleport")

    @pytest.mark.asyncio
    async def test_connection_targets_must_exist(self, service):
        workflow = await service.create_workflow(DOMAIN, "flow")
        with pytest.raises(WorkflowValidationError, match="do not exist"):
            await service.add_node(
                DOMAIN, workflow.workflow_id, "start", connections=[{"targetNodeId": 42}]
            )

    @pytest.mark.asyncio
    async def test_connect_and_update(self, service):
        workflow = await service.create_workflow(DOMAIN, "flow")
        start = await service.add_node(DOMAIN, workflow.workflow_id, "start")
        check = await service.add_node(DOMAIN, workflow.workflow_id, "condition", config={"condition": "true"})

        updated = await service.connect(DOMAIN, workflow.workflow_id, start.node_id, check.node_id)
        assert updated.connections == [Connection(target_node_id=check.node_id)]

        renamed = await service.update_node(DOMAIN, workflow.workflow_id, check.node_id, name="gate")
        assert renamed.name == "gate"
        with pytest.raises(NodeConfigError):
            await service.update_node(DOMAIN, workflow.workflow_id, check.node_id, config={"condition": 5})

    @pytest.mark.asyncio
    async def test_timer_node_on_enabled_workflow_is_registered(self, service, timer_repo):
        workflow = await service.create_workflow(DOMAIN, "flow")
        await service.set_enabled(DOMAIN, workflow.workflow_id, True)

        node = await service.add_node(DOMAIN, workflow.workflow_id, "timer", config={"time": "07:00", "interval": "day"})
        assert await timer_repo.get_by_node(DOMAIN, workflow.workflow_id, node.node_id) is not None

    @pytest.mark.asyncio
    async def test_delete_node_removes_timer_and_dangling_connections(self, service, node_repo, timer_repo):
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        wf_id = workflow.workflow_id

        assert await service.delete_node(DOMAIN, wf_id, 3) is True
        alarm = await node_repo.get(DOMAIN, wf_id, 1)
        press = await node_repo.get(DOMAIN, wf_id, 2)
        assert alarm.connections == [] and press.connections == []

        assert await service.delete_node(DOMAIN, wf_id, 1) is True
        assert await timer_repo.count() == 0
        assert await service.delete_node(DOMAIN, wf_id, 1) is False


class TestImport:
    """定义导入"""

    @pytest.mark.asyncio
    async def test_import_assigns_ids_and_connections(self, service, node_repo, timer_repo):
        workflow = await service.import_definition(DOMAIN, WAKE_UP, owner=5)

        assert workflow.enabled and workflow.status == WorkflowStatus.ACTIVE
        nodes = await node_repo.list_by_workflow(DOMAIN, workflow.workflow_id)
        assert [(n.node_id, n.node_type) for n in nodes] == [(1, "timer"), (2, "button"), (3, "device_control")]
        assert nodes[0].connections == [Connection(target_node_id=3)]
        assert nodes[0].owner == 5

        timer = await timer_repo.get_by_node(DOMAIN, workflow.workflow_id, 1)
        assert timer.trigger_data == {"scene": "morning"}

    @pytest.mark.asyncio
    async def test_import_keeps_explicit_status(self, service, timer_repo):
        workflow = await service.import_definition(DOMAIN, {
            "name": "paused",
            "enabled": True,
            "status": "inactive",
            "nodes": [{"type": "timer", "config": {"interval": "minute"}}],
        })
        assert workflow.enabled is True
        assert workflow.status == WorkflowStatus.INACTIVE
        assert await timer_repo.count() == 1


class TestTriggers:
    """按钮与定时触发"""

    @pytest.mark.asyncio
    async def test_button_trigger_runs_workflow(self, service, devices, event_bus):
        host = devices.add_host(DOMAIN, 10)
        devices.add_device(host, "lamp-1", {"on": False})
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        await service.bind()

        result = await service.trigger_workflow(DOMAIN, workflow.workflow_id, node_id=2, triggered_by=8)
        await event_bus.drain()

        assert result == {"success": True, "message": "Workflow triggered successfully"}
        assert (await devices.find_by_device_id("lamp-1")).state == {"on": True}

    @pytest.mark.asyncio
    async def test_button_trigger_payload(self, service, event_bus):
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        seen = []
        await event_bus.subscribe("workflow/trigger", lambda event: seen.append(event.payload))

        await service.trigger_workflow(
            DOMAIN, workflow.workflow_id, node_id=2, triggered_by=8, trigger_data={"source": "panel"}
        )
        await event_bus.drain()

        payload = seen[0]
        assert payload["domainId"] == DOMAIN
        assert payload["workflowId"] == workflow.workflow_id
        data = payload["triggerData"]
        assert data["triggerType"] == "button"
        assert data["nodeId"] == 2
        assert data["triggeredBy"] == 8
        assert data["source"] == "panel"
        assert "triggeredAt" in data

    @pytest.mark.asyncio
    async def test_button_trigger_requirements(self, service):
        workflow = await service.create_workflow(DOMAIN, "flow")
        await service.add_node(DOMAIN, workflow.workflow_id, "start")

        with pytest.raises(WorkflowValidationError, match="not enabled"):
            await service.trigger_workflow(DOMAIN, workflow.workflow_id)

        await service.set_enabled(DOMAIN, workflow.workflow_id, True)
        with pytest.raises(WorkflowValidationError, match="button"):
            await service.trigger_workflow(DOMAIN, workflow.workflow_id)

        await service.add_node(DOMAIN, workflow.workflow_id, "button")
        await service.update_workflow(DOMAIN, workflow.workflow_id, status="inactive")
        with pytest.raises(WorkflowValidationError, match="must be active"):
            await service.trigger_workflow(DOMAIN, workflow.workflow_id)

    @pytest.mark.asyncio
    async def test_timer_fires_workflow_from_timer_node(self, service, scheduler, devices, event_bus, clock):
        host = devices.add_host(DOMAIN, 10)
        devices.add_device(host, "lamp-1", {"on": False})
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        await service.bind()

        executed = []
        original = service.executor.execute

        async def spy(domain_id, workflow_id, trigger_data=None):
            context = await original(domain_id, workflow_id, trigger_data)
            executed.append(context)
            return context

        service.executor.execute = spy

        clock.now += timedelta(days=1)
        assert await scheduler.claim_next() is not None
        await event_bus.drain()

        assert len(executed) == 1
        context = executed[0]
        assert context.workflow_id == workflow.workflow_id
        assert context.history == [1, 3]
        assert context.variables["triggerType"] == "timer"
        assert context.variables["scene"] == "morning"
        assert (await devices.find_by_device_id("lamp-1")).state == {"on": True}

    @pytest.mark.asyncio
    async def test_timer_for_deleted_workflow_is_dropped(self, service, event_bus):
        await service.bind()
        triggers = []
        await event_bus.subscribe("workflow/trigger", lambda event: triggers.append(event))

        await event_bus.publish("workflow/timer", {
            "domainId": DOMAIN, "workflowId": 77, "nodeId": 1, "triggerData": {}
        })
        await event_bus.drain()
        assert triggers == []

    @pytest.mark.asyncio
    async def test_execution_failure_is_logged(self, service, event_bus, caplog):
        workflow = await service.import_definition(DOMAIN, WAKE_UP)
        await service.bind()

        # 没有注册设备，设备节点失败
        await service.trigger_workflow(DOMAIN, workflow.workflow_id, node_id=2)
        await event_bus.drain()

        assert "Workflow execution failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unbind(self, service, event_bus):
        await service.bind()
        await service.bind()
        assert event_bus.subscriber_count("workflow/trigger") == 1

        await service.unbind()
        assert event_bus.subscriber_count("workflow/trigger") == 0
        assert event_bus.subscriber_count("workflow/timer") == 0
