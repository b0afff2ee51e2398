"""
引擎配置
"""
import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class EngineConfig:
    """引擎运行配置（与单个工作流的 settings 相互独立）"""
    max_iterations: int = 10000
    resume_poll_seconds: int = 60
    default_wait_timeout: int = 3600
    rate_window_seconds: int = 3600
    execution_retention_days: int = 30
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./automation.db"

    @classmethod
    def from_env(cls, dotenv_path: str = None) -> "EngineConfig":
        """从环境变量（及 .env 文件）加载配置"""
        load_dotenv(dotenv_path)
        return cls(
            max_iterations=int(os.getenv("AUTOMATION_MAX_ITERATIONS", "10000")),
            resume_poll_seconds=int(os.getenv("AUTOMATION_RESUME_POLL_SECONDS", "60")),
            default_wait_timeout=int(os.getenv("AUTOMATION_DEFAULT_WAIT_TIMEOUT", "3600")),
            rate_window_seconds=int(os.getenv("AUTOMATION_RATE_WINDOW_SECONDS", "3600")),
            execution_retention_days=int(os.getenv("AUTOMATION_EXECUTION_RETENTION_DAYS", "30")),
            log_level=os.getenv("AUTOMATION_LOG_LEVEL", "INFO").upper(),
            database_url=os.getenv("AUTOMATION_DATABASE_URL", "sqlite+aiosqlite:///./automation.db"),
        )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
