"""
Workflow Automation CLI
"""
import click
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Optional

from .config import EngineSettings
from .core import WorkflowExecutor, TimerScheduler, WorkflowService, StaticLeadership, AgentTaskBridge
from .integrations import EventBus
from .storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyNodeRepository,
    SQLAlchemyTimerRepository,
    DatabaseLeaseLeadership
)


logger = logging.getLogger(__name__)


def build_service(
    settings: EngineSettings,
    db: DatabaseManager,
    leadership=None,
    event_bus: Optional[EventBus] = None,
    device_registry=None,
    device_channel=None,
    agent_registry=None,
    tool_catalog=None,
    task_queue=None,
    client_channel=None
) -> WorkflowService:
    """
    基于数据库仓库组装工作流服务

    外部协作方均可选；提供 task_queue 时按配置的超时与轮询间隔创建智能体任务桥接器。
    """
    workflows = SQLAlchemyWorkflowRepository(db)
    nodes = SQLAlchemyNodeRepository(db)
    timers = SQLAlchemyTimerRepository(db)
    if event_bus is None:
        event_bus = EventBus()

    agent_bridge = None
    if task_queue is not None:
        agent_bridge = AgentTaskBridge(
            task_queue,
            event_bus,
            timeout=settings.agent_job_timeout,
            poll_interval=settings.agent_poll_interval
        )

    executor = WorkflowExecutor(
        workflow_repository=workflows,
        node_repository=nodes,
        device_registry=device_registry,
        device_channel=device_channel,
        agent_registry=agent_registry,
        tool_catalog=tool_catalog,
        agent_bridge=agent_bridge,
        client_channel=client_channel,
        max_execution_steps=settings.max_execution_steps
    )
    scheduler = TimerScheduler(
        workflow_repository=workflows,
        node_repository=nodes,
        timer_repository=timers,
        event_bus=event_bus,
        leadership=leadership or StaticLeadership(settings.scheduler_leader),
        poll_interval=settings.timer_poll_interval,
        error_backoff=settings.timer_error_backoff
    )
    return WorkflowService(
        workflow_repository=workflows,
        node_repository=nodes,
        timer_repository=timers,
        executor=executor,
        scheduler=scheduler,
        event_bus=event_bus
    )


async def _open_database(settings: EngineSettings) -> DatabaseManager:
    db = DatabaseManager(settings.database_url)
    await db.initialize()
    return db


@click.group()
@click.option('--env-file', type=click.Path(dir_okay=False), default=None, help='Path to .env file')
@click.pass_context
def cli(ctx, env_file):
    """Workflow Automation CLI"""
    settings = EngineSettings.from_env(env_file)
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.obj = settings


@cli.command('init-db')
@click.pass_obj
def init_db(settings):
    """Create database tables"""
    async def _init():
        db = await _open_database(settings)
        await db.close()

    asyncio.run(_init())
    click.echo(f"Database initialized: {settings.database_url}")


@cli.command('import')
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--domain', required=True, help='Domain ID')
@click.option('--owner', type=int, default=None, help='Owner user ID')
@click.pass_obj
def import_workflow(settings, workflow_file, domain, owner):
    """Import a workflow from a YAML or JSON file"""
    async def _import():
        db = await _open_database(settings)
        try:
            service = build_service(settings, db)
            return await service.import_definition(domain, str(Path(workflow_file)), owner=owner)
        finally:
            await db.close()

    workflow = asyncio.run(_import())
    click.echo(
        f"Imported workflow {workflow.workflow_id} '{workflow.name}' "
        f"(enabled={workflow.enabled}, status={workflow.status.value})"
    )


@cli.command('register-timers')
@click.option('--domain', default=None, help='Only register timers of this domain')
@click.option('--workflow', 'workflow_id', type=int, default=None, help='Only register timers of this workflow')
@click.pass_obj
def register_timers(settings, domain, workflow_id):
    """Register timers of enabled workflows"""
    if workflow_id is not None and domain is None:
        raise click.UsageError("--workflow requires --domain")

    async def _register():
        db = await _open_database(settings)
        try:
            service = build_service(settings, db)
            if workflow_id is not None:
                return await service.scheduler.register_timers(domain, workflow_id)
            if domain is not None:
                total = 0
                for workflow in await service.workflow_repository.list_active(domain):
                    total += await service.scheduler.register_timers(domain, workflow.workflow_id)
                return total
            return await service.scheduler.register_all()
        finally:
            await db.close()

    count = asyncio.run(_register())
    click.echo(f"Registered {count} timers")


@cli.command()
@click.argument('domain')
@click.argument('workflow_id', type=int)
@click.option('--node-id', type=int, default=None, help='Entry node ID')
@click.option('--data', 'data', default='{}', help='Trigger data as JSON object')
@click.pass_obj
def trigger(settings, domain, workflow_id, node_id, data):
    """Execute a workflow once in this process"""
    try:
        trigger_data = json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint='--data')
    if not isinstance(trigger_data, dict):
        raise click.BadParameter("must be a JSON object", param_hint='--data')
    if node_id is not None:
        trigger_data['nodeId'] = node_id

    async def _trigger():
        db = await _open_database(settings)
        try:
            service = build_service(settings, db)
            return await service.executor.execute(domain, workflow_id, trigger_data)
        finally:
            await db.close()

    context = asyncio.run(_trigger())
    if context is None:
        raise click.ClickException(f"Workflow {workflow_id} could not be started, see log for details")
    click.echo(f"Execution {context.execution_id} finished, visited nodes: {context.history}")
    click.echo(json.dumps(context.variables, indent=2, ensure_ascii=False, default=str))


@cli.command()
@click.option(
    '--leadership',
    type=click.Choice(['static', 'lease']),
    default='static',
    help='static: SCHEDULER_LEADER decides; lease: database lease election'
)
@click.pass_obj
def scheduler(settings, leadership):
    """Run the timer scheduler until interrupted"""
    async def _run():
        db = await _open_database(settings)
        lease = None
        if leadership == 'lease':
            lease = DatabaseLeaseLeadership(
                db,
                holder=settings.scheduler_instance_id,
                ttl=settings.timer_lease_ttl
            )
        service = build_service(settings, db, leadership=lease)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

        await service.bind()
        try:
            if await service.scheduler.leadership.is_leader():
                await service.scheduler.register_all()
            service.scheduler.start()
            click.echo(f"Scheduler running as {settings.scheduler_instance_id}, press Ctrl+C to stop")
            await stop.wait()
        finally:
            await service.scheduler.stop()
            await service.event_bus.drain()
            await service.unbind()
            await db.close()

    asyncio.run(_run())
    click.echo("Scheduler stopped")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
