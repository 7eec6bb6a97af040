"""
命令行测试
"""
import pytest
from click.testing import CliRunner

from workflow_automation.cli import cli, build_service
from workflow_automation.config import EngineSettings
from workflow_automation.models import NodeType


FLOW_YAML = """
name: Hello
enabled: true
nodes:
  - id: begin
    type: start
    connections: [pause]
  - id: pause
    type: delay
    config: {delayMs: 0}
    connections: [done]
  - id: done
    type: end
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env(tmp_path):
    return {"DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"}


class TestCli:
    """workflow-automation 命令"""

    def test_import_and_trigger(self, runner, env, tmp_path):
        flow = tmp_path / "hello.yaml"
        flow.write_text(FLOW_YAML, encoding="utf-8")

        result = runner.invoke(cli, ["init-db"], env=env)
        assert result.exit_code == 0, result.output
        assert "Database initialized" in result.output

        result = runner.invoke(cli, ["import", str(flow), "--domain", "home"], env=env)
        assert result.exit_code == 0, result.output
        assert "Imported workflow 1 'Hello' (enabled=True, status=active)" in result.output

        result = runner.invoke(cli, ["register-timers", "--domain", "home"], env=env)
        assert result.exit_code == 0, result.output
        assert "Registered 0 timers" in result.output

        result = runner.invoke(cli, ["trigger", "home", "1", "--data", '{"who": "cli"}'], env=env)
        assert result.exit_code == 0, result.output
        assert "visited nodes: [1, 2, 3]" in result.output
        assert '"who": "cli"' in result.output

    def test_trigger_missing_workflow(self, runner, env):
        result = runner.invoke(cli, ["trigger", "home", "42"], env=env)
        assert result.exit_code == 1
        assert "could not be started" in result.output

    def test_trigger_rejects_bad_data(self, runner, env):
        result = runner.invoke(cli, ["trigger", "home", "1", "--data", "[1, 2]"], env=env)
        assert result.exit_code == 2
        assert "must be a JSON object" in result.output

    def test_register_workflow_requires_domain(self, runner, env):
        result = runner.invoke(cli, ["register-timers", "--workflow", "3"], env=env)
        assert result.exit_code == 2
        assert "--workflow requires --domain" in result.output


class TestBuildService:
    """build_service 组装"""

    @pytest.mark.asyncio
    async def test_agent_settings_reach_bridge(self, database, task_queue, event_bus, agents, tools, clients):
        settings = EngineSettings(agent_job_timeout=12.0, agent_poll_interval=0.5)

        service = build_service(
            settings,
            database,
            event_bus=event_bus,
            agent_registry=agents,
            tool_catalog=tools,
            task_queue=task_queue,
            client_channel=clients
        )

        agent = service.executor.executors[NodeType.AGENT_MESSAGE]
        assert agent.bridge.timeout == 12.0
        assert agent.bridge.poll_interval == 0.5
        assert agent.bridge.task_queue is task_queue
        assert agent.bridge.event_bus is event_bus
        assert agent.agent_registry is agents
        assert service.event_bus is event_bus
        assert service.scheduler.event_bus is event_bus

    @pytest.mark.asyncio
    async def test_no_bridge_without_task_queue(self, database):
        service = build_service(EngineSettings(), database)

        assert service.executor.executors[NodeType.AGENT_MESSAGE].bridge is None
