"""
引擎配置
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineSettings:
    """工作流引擎运行配置"""
    database_url: str = "sqlite+aiosqlite:///workflow_automation.db"
    # 定时器轮询仅在 leader 实例上运行
    scheduler_leader: bool = True
    scheduler_instance_id: str = "instance-0"
    timer_poll_interval: float = 1.0
    timer_error_backoff: float = 5.0
    timer_lease_ttl: float = 15.0
    agent_job_timeout: float = 300.0
    agent_poll_interval: float = 2.0
    max_execution_steps: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineSettings":
        """从环境变量加载配置"""
        load_dotenv(env_file)
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            scheduler_leader=_env_bool("SCHEDULER_LEADER", defaults.scheduler_leader),
            scheduler_instance_id=os.getenv("SCHEDULER_INSTANCE_ID", defaults.scheduler_instance_id),
            timer_poll_interval=float(os.getenv("TIMER_POLL_INTERVAL", defaults.timer_poll_interval)),
            timer_error_backoff=float(os.getenv("TIMER_ERROR_BACKOFF", defaults.timer_error_backoff)),
            timer_lease_ttl=float(os.getenv("TIMER_LEASE_TTL", defaults.timer_lease_ttl)),
            agent_job_timeout=float(os.getenv("AGENT_JOB_TIMEOUT", defaults.agent_job_timeout)),
            agent_poll_interval=float(os.getenv("AGENT_POLL_INTERVAL", defaults.agent_poll_interval)),
            max_execution_steps=int(os.getenv("MAX_EXECUTION_STEPS", defaults.max_execution_steps)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
