"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")

    # ==================== 锁与缓存 ====================
    redis_url: str = Field(
        default="",
        description="Redis 连接串，留空则使用进程内存锁存储",
    )
    lock_ttl_seconds: int = Field(
        default=300,
        ge=5,
        le=3600,
        description="单次流水线执行锁 TTL（秒），会被截断到调度周期以内",
    )
    position_cache_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="持仓缓存 TTL（秒）",
    )

    # ==================== 调度 ====================
    max_workers: int = Field(
        default=8,
        ge=1,
        le=64,
        description="同时执行的机器人流水线上限",
    )
    candle_lookback: int = Field(
        default=200,
        ge=10,
        le=1500,
        description="每次评估拉取的 K 线数量",
    )

    # ==================== 风控参数 ====================
    risk_timezone: str = Field(
        default="UTC",
        description="日亏损统计使用的时区（按当地零点切日）",
    )

    # ==================== 绩效监控 ====================
    performance_start_equity: float | None = Field(
        default=None,
        gt=0,
        description="绩效曲线的起始资金，留空则使用纸交易初始资金",
    )
    alert_min_win_rate_pct: float = Field(
        default=40.0,
        ge=0.0,
        le=100.0,
        description="胜率低于该值时告警（%）",
    )
    alert_max_margin_usage_pct: float = Field(
        default=80.0,
        gt=0.0,
        description="持仓名义价值占权益比例高于该值时告警（%）",
    )

    # ==================== AI 信号复核 ====================
    ai_review_enabled: bool = Field(default=False, description="是否启用 LLM 信号复核")
    ai_fail_open: bool = Field(
        default=False,
        description="LLM 不可用时是否以半仓位继续（默认跳过本周期）",
    )
    openrouter_api_key: str = Field(default="", description="OpenRouter API Key")
    openrouter_model: str = Field(
        default="anthropic/claude-3.5-sonnet",
        description="OpenRouter 模型名称",
    )
    openrouter_timeout: int = Field(default=30, description="LLM 调用超时（秒）")

    # ==================== 纸交易 ====================
    paper_initial_balance: float = Field(
        default=10_000.0,
        gt=0,
        description="纸交易初始资金",
    )
    paper_slippage_bps: float = Field(
        default=2.0,
        ge=0.0,
        le=100.0,
        description="纸交易滑点（基点）",
    )

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    data_dir: Path = Field(
        default=Path("data"),
        description="机器人与交易记录存储目录",
    )
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="流水线事件日志存储目录",
    )
    strategies_file: Path | None = Field(
        default=None,
        description="额外策略定义 JSON 文件",
    )

    @field_validator("data_dir", "journal_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("strategies_file", mode="before")
    @classmethod
    def parse_strategies_file(cls, v: str | Path | None) -> Path | None:
        """空字符串视为未配置。"""
        if v is None or v == "":
            return None
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def starting_equity(self) -> float:
        """绩效统计使用的起始资金。"""
        return self.performance_start_equity or self.paper_initial_balance

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        if not self.redis_url:
            missing.append("REDIS_URL")
        if self.ai_review_enabled and not self.openrouter_api_key:
            missing.append("OPENROUTER_API_KEY")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
