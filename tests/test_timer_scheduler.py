"""
定时调度器测试
"""
import asyncio
import pytest
from datetime import datetime, timedelta

from workflow_automation.core import TimerScheduler, StaticLeadership, compute_execute_after
from workflow_automation.models import (
    TimerConfig, TimerInterval, TimerUnit, WorkflowTimer, parse_node_config
)
from workflow_automation.storage import InMemoryTimerRepository

from conftest import DOMAIN


def timer_config(**raw) -> TimerConfig:
    return parse_node_config("timer", raw)


class TestComputeExecuteAfter:
    """首次触发时间计算"""

    NOW = datetime(2024, 3, 10, 8, 0, 0, 500)

    def test_minute_without_anchor(self):
        config = timer_config(interval="minute", intervalValue=5)
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 10, 8, 5, 0)

    def test_minute_with_future_second_anchor(self):
        config = timer_config(interval="minute", second=30)
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 10, 8, 0, 30)

    def test_minute_with_elapsed_second_anchor(self):
        config = timer_config(interval="minute", intervalValue=2, second=0)
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 10, 8, 2, 0)

    def test_hour_anchor_later_this_hour(self):
        config = timer_config(interval="hour", time="00:15:20")
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 10, 8, 15, 20)

    def test_hour_anchor_elapsed(self):
        now = datetime(2024, 3, 10, 8, 30)
        config = timer_config(interval="hour", intervalValue=3, time="00:15:00")
        assert compute_execute_after(config, now) == datetime(2024, 3, 10, 11, 15, 0)

    def test_day_anchor_later_today(self):
        config = timer_config(interval="day", time="09:30")
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 10, 9, 30)

    def test_day_anchor_elapsed(self):
        config = timer_config(interval="day", time="07:00")
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 11, 7, 0)

    def test_week_anchor_elapsed(self):
        config = timer_config(interval="week", intervalValue=2, time="06:00")
        assert compute_execute_after(config, self.NOW) == datetime(2024, 3, 24, 6, 0)

    def test_month_clamps_to_last_day(self):
        now = datetime(2024, 1, 31, 8, 0)
        config = timer_config(interval="month", time="07:00")
        assert compute_execute_after(config, now) == datetime(2024, 2, 29, 7, 0)

    def test_day_without_time_is_rejected(self):
        config = timer_config(interval="day")
        assert not config.has_schedule
        with pytest.raises(ValueError):
            compute_execute_after(config, self.NOW)


class TestRegisterTimers:
    """定时器注册"""

    @pytest.mark.asyncio
    async def test_registers_timer_nodes(self, scheduler, build_graph, timer_repo):
        await build_graph([
            (1, "timer", {"time": "07:00", "interval": "day", "triggerData": {"scene": "wake"}}, []),
            (2, "start", {}, []),
        ])
        assert await scheduler.register_timers(DOMAIN, 1) == 1

        timer = await timer_repo.get_by_node(DOMAIN, 1, 1)
        assert timer.execute_after == datetime(2024, 3, 11, 7, 0)
        assert timer.interval == TimerInterval(1, TimerUnit.DAY)
        assert timer.trigger_data == {"scene": "wake"}

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, scheduler, build_graph, timer_repo, clock):
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])])

        assert await scheduler.register_timers(DOMAIN, 1) == 1
        first = await timer_repo.get_by_node(DOMAIN, 1, 1)
        clock.now += timedelta(hours=1)
        assert await scheduler.register_timers(DOMAIN, 1) == 0

        assert await timer_repo.count() == 1
        assert (await timer_repo.get_by_node(DOMAIN, 1, 1)).execute_after == first.execute_after

    @pytest.mark.asyncio
    async def test_changed_schedule_replaces_timer(self, scheduler, build_graph, timer_repo, node_repo):
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])])
        await scheduler.register_timers(DOMAIN, 1)

        await node_repo.set(DOMAIN, 1, 1, {"config": {"time": "07:00", "interval": "week"}})
        assert await scheduler.register_timers(DOMAIN, 1) == 1

        timer = await timer_repo.get_by_node(DOMAIN, 1, 1)
        assert timer.interval == TimerInterval(1, TimerUnit.WEEK)
        assert timer.execute_after == datetime(2024, 3, 17, 7, 0)
        assert await timer_repo.count() == 1

    @pytest.mark.asyncio
    async def test_expired_timer_is_replaced(self, scheduler, build_graph, timer_repo, clock):
        await build_graph([(1, "timer", {"interval": "minute"}, [])])
        await scheduler.register_timers(DOMAIN, 1)

        clock.now += timedelta(minutes=5)
        assert await scheduler.register_timers(DOMAIN, 1) == 1
        timer = await timer_repo.get_by_node(DOMAIN, 1, 1)
        assert timer.execute_after == datetime(2024, 3, 10, 8, 6, 0)

    @pytest.mark.asyncio
    async def test_disabled_workflow_is_skipped(self, scheduler, build_graph, timer_repo):
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])], enabled=False)
        assert await scheduler.register_timers(DOMAIN, 1) == 0
        assert await timer_repo.count() == 0

    @pytest.mark.asyncio
    async def test_bad_nodes_do_not_block_siblings(self, scheduler, build_graph, timer_repo, caplog):
        await build_graph([
            (1, "timer", {"interval": "fortnight", "time": "07:00"}, []),
            (2, "timer", {"interval": "day"}, []),
            (3, "timer", {"time": "07:00", "interval": "day"}, []),
        ])
        assert await scheduler.register_timers(DOMAIN, 1) == 1

        assert await timer_repo.get_by_node(DOMAIN, 1, 3) is not None
        assert await timer_repo.count() == 1
        assert "Timer registration failed for workflow 1, node 1" in caplog.text

    @pytest.mark.asyncio
    async def test_publishes_registration_event(self, scheduler, build_graph, event_bus):
        received = []
        await event_bus.subscribe("workflow/timer/registered", lambda event: received.append(event.payload))
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])])

        await scheduler.register_timers(DOMAIN, 1)
        assert received == [{"domainId": DOMAIN, "workflowId": 1, "registered": 1}]

    @pytest.mark.asyncio
    async def test_register_all_covers_active_workflows(self, scheduler, build_graph, timer_repo):
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])], workflow_id=1)
        await build_graph([(1, "timer", {"time": "07:00", "interval": "day"}, [])], workflow_id=2, enabled=False)

        assert await scheduler.register_all() == 1
        assert await timer_repo.list_by_workflow(DOMAIN, 2) == []

    @pytest.mark.asyncio
    async def test_unregister(self, scheduler, build_graph, timer_repo):
        await build_graph([
            (1, "timer", {"time": "07:00", "interval": "day"}, []),
            (2, "timer", {"time": "08:00", "interval": "day"}, []),
        ])
        await scheduler.register_timers(DOMAIN, 1)

        assert await scheduler.unregister_timers(DOMAIN, 1, node_id=2) == 1
        assert await scheduler.unregister_timers(DOMAIN, 1) == 1
        assert await timer_repo.count() == 0


class TestClaim:
    """到期定时器认领"""

    @pytest.mark.asyncio
    async def test_claim_rearms_recurring_timer(self, scheduler, timer_repo, event_bus, clock):
        fired = []
        await event_bus.subscribe("workflow/timer", lambda event: fired.append(event.payload))
        due_at = clock.now - timedelta(minutes=1)
        await timer_repo.add(WorkflowTimer(
            domain_id=DOMAIN, workflow_id=1, node_id=4,
            execute_after=due_at,
            interval=TimerInterval(1, TimerUnit.DAY),
            trigger_data={"scene": "wake"},
        ))

        claimed = await scheduler.claim_next()
        await event_bus.drain()

        assert claimed.execute_after == due_at
        timers = await timer_repo.list_by_workflow(DOMAIN, 1)
        assert len(timers) == 1
        assert timers[0].execute_after == due_at + timedelta(days=1)
        assert fired == [{"domainId": DOMAIN, "workflowId": 1, "nodeId": 4, "triggerData": {"scene": "wake"}}]

    @pytest.mark.asyncio
    async def test_one_shot_timer_is_removed(self, scheduler, timer_repo, clock):
        await timer_repo.add(WorkflowTimer(
            domain_id=DOMAIN, workflow_id=1, node_id=4,
            execute_after=clock.now - timedelta(seconds=1),
        ))
        assert await scheduler.claim_next() is not None
        assert await timer_repo.count() == 0

    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler, timer_repo, clock):
        await timer_repo.add(WorkflowTimer(
            domain_id=DOMAIN, workflow_id=1, node_id=4, execute_after=clock.now,
        ))
        assert await scheduler.claim_next() is None
        assert await timer_repo.count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_timer(self, scheduler, timer_repo, clock):
        for node_id in range(1, 6):
            await timer_repo.add(WorkflowTimer(
                domain_id=DOMAIN, workflow_id=1, node_id=node_id,
                execute_after=clock.now - timedelta(minutes=node_id),
            ))
        results = await asyncio.gather(*[scheduler.claim_next() for _ in range(8)])
        claimed = [t.node_id for t in results if t is not None]

        assert sorted(claimed) == [1, 2, 3, 4, 5]
        assert await timer_repo.count() == 0


class FlakyTimerRepository(InMemoryTimerRepository):
    """前几次认领失败的定时器仓库"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def claim_due(self, now):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("store unavailable")
        return await super().claim_due(now)


class CountingLeadership(StaticLeadership):
    """记录释放次数的领导权"""

    def __init__(self):
        super().__init__(True)
        self.releases = 0

    async def release(self):
        self.releases += 1


class TestClaimLoop:
    """认领循环"""

    @pytest.mark.asyncio
    async def test_loop_backs_off_and_recovers(self, workflow_repo, node_repo, event_bus, clock, caplog):
        repo = FlakyTimerRepository(failures=2)
        await repo.add(WorkflowTimer(
            domain_id=DOMAIN, workflow_id=1, node_id=1, execute_after=clock.now - timedelta(seconds=1),
        ))
        fired = asyncio.Event()
        await event_bus.subscribe("workflow/timer", lambda event: fired.set())
        scheduler = TimerScheduler(
            workflow_repo, node_repo, repo, event_bus,
            poll_interval=0.01, error_backoff=0.02, clock=clock
        )

        scheduler.start()
        await asyncio.wait_for(fired.wait(), timeout=2.0)
        assert scheduler.is_running
        await scheduler.stop()

        assert not scheduler.is_running
        assert repo.calls >= 3
        assert "Error consuming workflow timers" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_ends_idle_loop(self, scheduler):
        task = scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.is_running

        await scheduler.stop()
        assert task.done()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_follower_does_not_claim(self, workflow_repo, node_repo, timer_repo, event_bus, clock):
        await timer_repo.add(WorkflowTimer(
            domain_id=DOMAIN, workflow_id=1, node_id=1, execute_after=clock.now - timedelta(seconds=1),
        ))
        scheduler = TimerScheduler(
            workflow_repo, node_repo, timer_repo, event_bus,
            leadership=StaticLeadership(False), poll_interval=0.01, clock=clock
        )
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert await timer_repo.count() == 1

    @pytest.mark.asyncio
    async def test_stop_releases_leadership_once(self, workflow_repo, node_repo, timer_repo, event_bus, clock):
        leadership = CountingLeadership()
        scheduler = TimerScheduler(
            workflow_repo, node_repo, timer_repo, event_bus,
            leadership=leadership, poll_interval=0.01, clock=clock
        )
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert leadership.releases == 1
