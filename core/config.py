# /core/config.py
from decimal import Decimal
from typing import List, Tuple
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./parking.db"
    ADMIN_API_KEY: str | None = None
    DEV_MODE: bool = False
    LOG_LEVEL: str = "INFO"

    # 计费
    GRACE_PERIOD_MINUTES: int = Field(default=15, ge=0)
    HANDICAPPED_HOURLY_RATE: Decimal = Decimal("2.00")

    # 罚款
    OVERSTAY_THRESHOLD_HOURS: int = Field(default=24, ge=0)
    DEFAULT_FINE_STRATEGY: str = "FIXED"
    FIXED_FINE_AMOUNT: Decimal = Decimal("50.00")
    HOURLY_FINE_RATE: Decimal = Decimal("20.00")
    # (超时小时数下限, 追加金额)，累加计算
    PROGRESSIVE_FINE_TIERS: List[Tuple[int, Decimal]] = [
        (0, Decimal("50.00")),
        (24, Decimal("100.00")),
        (48, Decimal("150.00")),
        (72, Decimal("200.00")),
    ]
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
