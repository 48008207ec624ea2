"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


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

    从环境变量和 .env 文件加载配置。所有时间间隔均以秒为单位。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(
        default=RunMode.PAPER,
        description="运行模式: paper 或 live",
    )

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(
        default="",
        description="Binance API Secret",
    )
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")

    # ==================== OpenRouter API ====================
    openrouter_api_key: str = Field(
        default="",
        description="OpenRouter API Key",
    )
    openrouter_model: str = Field(
        default="anthropic/claude-3.5-sonnet",
        description="OpenRouter 模型名称",
    )
    openrouter_timeout: int = Field(default=30, description="LLM 调用超时（秒）")

    # ==================== 交易对 ====================
    quote_currency: str = Field(default="USDT", description="计价货币")
    trading_pairs: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["BTC/USDT", "ETH/USDT"],
        description="交易对列表，逗号分隔",
    )
    market_data_interval: float = Field(
        default=5.0,
        gt=0,
        description="行情轮询间隔（秒）",
    )

    # ==================== 风控参数 ====================
    max_daily_loss: float = Field(
        default=100.0,
        gt=0,
        description="单日最大亏损（计价货币）",
    )
    max_position_size: float = Field(
        default=1000.0,
        gt=0,
        description="单个持仓最大市值（计价货币）",
    )
    stop_loss_percentage: float = Field(
        default=5.0,
        ge=0.5,
        le=20.0,
        description="止损百分比",
    )
    max_open_positions: int = Field(
        default=5,
        ge=1,
        le=50,
        description="最大持仓数量",
    )
    emergency_stop_enabled: bool = Field(default=True, description="是否启用紧急停机")
    min_trade_value: float = Field(default=10.0, gt=0, description="最小交易金额")
    position_size_fraction: float = Field(
        default=0.1,
        gt=0,
        le=1.0,
        description="基础仓位占可用余额比例",
    )
    max_balance_fraction: float = Field(
        default=0.25,
        gt=0,
        le=1.0,
        description="单笔交易占可用余额上限",
    )
    max_slippage_pct: float = Field(
        default=2.0,
        ge=0,
        le=10.0,
        description="最大滑点（百分比）",
    )
    max_price_deviation_pct: float = Field(
        default=5.0,
        ge=0,
        le=50.0,
        description="委托价偏离市价上限（百分比）",
    )
    fee_buffer_pct: float = Field(
        default=5.0,
        ge=0,
        le=20.0,
        description="手续费缓冲（百分比）",
    )

    # ==================== 决策参数 ====================
    min_confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="信号最低置信度",
    )
    max_positions_per_symbol: int = Field(
        default=1,
        ge=1,
        le=10,
        description="单币种最大持仓数",
    )
    enable_buy_signals: bool = Field(default=True, description="是否处理买入信号")
    enable_sell_signals: bool = Field(default=True, description="是否处理卖出信号")
    enable_continuous_monitoring: bool = Field(
        default=True,
        description="是否启用持续监控",
    )
    monitoring_interval: float = Field(
        default=30.0,
        gt=0,
        description="持续监控间隔（秒）",
    )
    decision_cooldown: float = Field(
        default=60.0,
        ge=0,
        description="同一币种决策冷却（秒）",
    )
    signal_max_age: float = Field(default=300.0, gt=0, description="信号过期时间（秒）")
    take_profit_pct: float = Field(
        default=10.0,
        gt=0,
        description="持续监控止盈阈值（百分比）",
    )
    rebalance_threshold: float = Field(
        default=0.3,
        gt=0,
        le=1.0,
        description="单一持仓占组合比例再平衡阈值",
    )
    min_increase_balance: float = Field(
        default=50.0,
        ge=0,
        description="加仓所需最低可用余额",
    )

    # ==================== 会话参数 ====================
    signal_processing_interval: float = Field(
        default=30.0,
        gt=0,
        description="信号处理间隔（秒）",
    )
    position_update_interval: float = Field(
        default=10.0,
        gt=0,
        description="持仓同步间隔（秒）",
    )
    risk_enforcement_interval: float = Field(
        default=60.0,
        gt=0,
        description="风控检查间隔（秒）",
    )
    enable_auto_trading: bool = Field(default=True, description="是否自动请求信号并交易")
    sample_budget_ms: float = Field(
        default=1000.0,
        gt=0,
        description="单条行情处理时间预算（毫秒）",
    )

    # ==================== 故障恢复 ====================
    max_retry_attempts: int = Field(
        default=5,
        ge=0,
        le=50,
        description="单次故障最大恢复次数",
    )
    base_retry_delay: float = Field(default=1.0, gt=0, description="退避基础延迟（秒）")
    max_retry_delay: float = Field(default=60.0, gt=0, description="退避最大延迟（秒）")
    network_timeout: float = Field(default=10.0, gt=0, description="外部调用超时（秒）")
    state_backup_interval: float = Field(
        default=30.0,
        gt=0,
        description="状态快照间隔（秒）",
    )
    error_threshold: int = Field(default=10, ge=1, description="熔断器失败阈值")
    recovery_timeout: float = Field(
        default=300.0,
        gt=0,
        description="熔断器打开时长（秒）",
    )
    enable_auto_recovery: bool = Field(default=True, description="是否自动恢复")
    connectivity_check_interval: float = Field(
        default=30.0,
        gt=0,
        description="网络探测间隔（秒）",
    )
    connectivity_probe_url: str = Field(
        default="https://www.google.com",
        description="网络探测地址",
    )
    ai_rate_limit_cooldown: float = Field(
        default=60.0,
        ge=0,
        description="AI 服务限流冷却（秒）",
    )
    exchange_rate_limit_cooldown: float = Field(
        default=30.0,
        ge=0,
        description="交易所限流冷却（秒）",
    )
    state_path: Path = Field(
        default=Path("data/trading-bot-state.json"),
        description="系统状态快照文件",
    )

    # ==================== 纸交易 ====================
    paper_initial_balance: float = Field(
        default=10_000.0,
        gt=0,
        description="纸交易初始资金",
    )
    paper_slippage_bps: float = Field(
        default=2.0,
        ge=0,
        description="纸交易滑点（基点）",
    )
    paper_fee_rate: float = Field(
        default=0.001,
        ge=0,
        le=0.01,
        description="纸交易手续费率",
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
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志存储目录",
    )

    @field_validator("journal_dir", "state_path", mode="before")
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("trading_pairs", mode="before")
    @classmethod
    def parse_trading_pairs(cls, v: Any) -> Any:
        """支持逗号分隔的交易对字符串。"""
        if isinstance(v, str):
            return [pair.strip().upper() for pair in v.split(",") if pair.strip()]
        return v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        self.state_path.parent.mkdir(parents=True, exist_ok=True)

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
        if not self.openrouter_api_key:
            missing.append("OPENROUTER_API_KEY")
        return missing

    def with_changes(self, **changes: Any) -> "Settings":
        """返回应用了运行时修改的新配置（重新校验）。"""
        return type(self).model_validate(self.model_dump() | changes)

    def rate_limit_cooldown(self, service: str) -> float:
        """返回指定服务的限流冷却时间。"""
        if service == "ai":
            return self.ai_rate_limit_cooldown
        return self.exchange_rate_limit_cooldown


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
