from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """全局配置"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env 当前环境
    ENVIRONMENT: Literal['dev', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'SchoolPlatformBilling'
    FASTAPI_DESCRIPTION: str = 'Recurring platform subscription billing for school organizations'
    FASTAPI_DOCS_URL: str = '/docs'
    FASTAPI_REDOC_URL: str = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env 数据库
    DATABASE_TYPE: Literal['postgresql', 'sqlite'] = 'postgresql'
    DATABASE_HOST: str = '127.0.0.1'
    DATABASE_PORT: int = 5432
    DATABASE_USER: str = 'postgres'
    DATABASE_PASSWORD: str = ''

    # 数据库
    DATABASE_ECHO: bool | Literal['debug'] = False
    DATABASE_POOL_ECHO: bool | Literal['debug'] = False
    DATABASE_SCHEMA: str = 'school_platform'
    DATABASE_SQLITE_PATH: str = f'{BASE_PATH}/billing.sqlite3'

    # 日志
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
    LOG_STD_LEVEL: str = 'INFO'
    LOG_QUIET_LOGGERS: list[str] = ['stripe', 'httpx', 'apscheduler.executors.default']

    # --------------------------------------------------------------------------
    # [Billing & Stripe Configuration]
    # Per-student platform subscription billing
    # --------------------------------------------------------------------------

    # Stripe API Keys
    STRIPE_SECRET_KEY: str = ''  # Stripe secret key (sk_...)
    STRIPE_WEBHOOK_SECRET: str = ''  # Webhook signing secret (whsec_...)
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # 5 分钟

    # Per-student metered price (quantity = active students)
    STRIPE_PRICE_ID: str = ''

    # Gateway call bounds
    STRIPE_API_TIMEOUT: int = 30  # seconds per request
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    STRIPE_CIRCUIT_FAILURE_THRESHOLD: int = 5
    STRIPE_CIRCUIT_RECOVERY_TIMEOUT: int = 60

    # Billing policy defaults (overridable from platform_billing_settings)
    BILLING_PRICE_PER_STUDENT: int = 100  # minor units, display only
    BILLING_CURRENCY: str = 'gbp'
    BILLING_TRIAL_MONTHS: int = 1
    BILLING_RETRY_INTERVAL_DAYS: int = 3
    BILLING_FINAL_WARNING_AFTER_FAILURES: int = 3
    BILLING_PAUSE_AFTER_FAILURES: int = 2
    BILLING_GRACE_PERIOD_DAYS: int = 14
    BILLING_AUTO_DEACTIVATE_ENABLED: bool = True
    BILLING_CONFIG_REFRESH_SECONDS: int = 300
    BILLING_BATCH_CONCURRENCY: int = 5
    BILLING_RUN_LEASE_SECONDS: int = 300

    # Daily cron
    BILLING_CRON_ENABLED: bool = True
    BILLING_CRON_HOUR: int = 2
    BILLING_CRON_MINUTE: int = 0
    BILLING_CRON_TIMEZONE: str = 'UTC'
    CRON_SECRET: str = ''

    # Notifications (transactional email HTTP API)
    NOTIFICATION_API_URL: str = ''
    NOTIFICATION_API_KEY: str = ''
    NOTIFICATION_FROM_EMAIL: str = 'billing@example.com'
    NOTIFICATION_TIMEOUT: int = 10
    APP_BASE_URL: str = 'http://localhost:3000'

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """检查环境变量"""
        if values.get('ENVIRONMENT') == 'prod':
            # FastAPI
            values['FASTAPI_OPENAPI_URL'] = None

        return values

    @property
    def DATABASE_URL(self) -> str:  # noqa: N802
        if self.DATABASE_TYPE == 'sqlite':
            return f'sqlite+aiosqlite:///{self.DATABASE_SQLITE_PATH}'
        return (
            f'postgresql+asyncpg://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}'
            f'@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_SCHEMA}'
        )


@lru_cache
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings()


# 创建全局配置实例
settings = get_settings()
