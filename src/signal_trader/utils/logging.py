"""结构化日志配置模块。

所有组件通过 ``get_logger`` 获取 structlog 记录器，事件名使用 snake_case，
上下文以键值对形式附加。会话 ID 通过 contextvars 绑定到之后的每条日志。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from signal_trader.config import LogFormat, Settings, get_settings
from signal_trader.schemas import TradeExecution, TradingSignal

# 这些库在每次轮询时都会打印 INFO 级请求日志
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "binance")


def setup_logging(settings: Settings | None = None) -> None:
    """按配置初始化日志；重复调用会覆盖之前的配置。"""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.log_format == LogFormat.JSON:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.reset_defaults()
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# 便捷日志函数
def log_trade_signal(logger: structlog.stdlib.BoundLogger, signal: TradingSignal) -> None:
    """记录进入决策引擎的交易信号。"""
    logger.info(
        "trade_signal",
        symbol=signal.symbol,
        action=signal.action,
        confidence=round(signal.confidence, 4),
        target_price=signal.target_price,
    )


def log_llm_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    model: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录 LLM 调用。"""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "llm_call",
        model=model,
        success=success,
        latency_ms=round(latency_ms, 2),
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger, execution: TradeExecution, **kwargs: Any
) -> None:
    """记录订单结果；未成交的订单记为 warning。"""
    level = "info" if execution.status == "filled" else "warning"
    getattr(logger, level)(
        "order_execution",
        symbol=execution.symbol,
        side=execution.side,
        amount=execution.amount,
        price=execution.price,
        fee=execution.fee,
        order_id=execution.order_id,
        status=execution.status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )


def log_service_error(
    logger: structlog.stdlib.BoundLogger,
    *,
    service: str,
    code: str,
    error: str,
    **kwargs: Any,
) -> None:
    """记录外部服务错误。"""
    logger.error(
        "service_error",
        service=service,
        code=code,
        error=error,
        **kwargs,
    )


def log_slow_sample(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    elapsed_ms: float,
    budget_ms: float,
) -> None:
    """记录超出时间预算的行情处理（仅观测，不中断处理）。"""
    logger.warning(
        "market_sample_slow",
        symbol=symbol,
        elapsed_ms=round(elapsed_ms, 2),
        budget_ms=budget_ms,
    )


def bind_session_context(session_id: str, **kwargs: Any) -> None:
    """将会话 ID 等上下文绑定到之后的所有日志。"""
    structlog.contextvars.bind_contextvars(session_id=session_id, **kwargs)


def clear_session_context() -> None:
    """清除会话日志上下文。"""
    structlog.contextvars.clear_contextvars()
