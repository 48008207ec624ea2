"""CLI 入口模块 - Signal Trader 命令行接口。"""

import asyncio
import sys
from pathlib import Path

import click

from signal_trader import __version__
from signal_trader.ai.heuristic import HeuristicSignalProvider
from signal_trader.ai.openrouter_client import OpenRouterSignalProvider
from signal_trader.config import Settings, get_settings
from signal_trader.data.binance import BinanceMarketData
from signal_trader.data.feed import PollingMarketFeed
from signal_trader.errors import PersistenceError, SessionStartError
from signal_trader.events import EventBus
from signal_trader.exec.paper import PaperExchange
from signal_trader.interfaces import SignalProvider
from signal_trader.journal.store import JournalStore
from signal_trader.resilience import SERVICES, JsonFileStateStore, RecoverySystem
from signal_trader.session import TradingSession
from signal_trader.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Signal Trader - AI 信号驱动的自动交易控制循环。

    AI 信号只作为建议，所有交易都经过置信度与风控检查。
    """
    if version:
        click.echo(f"signal-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--signals",
    type=click.Choice(["heuristic", "openrouter"]),
    default="heuristic",
    show_default=True,
    help="信号来源",
)
@click.option(
    "--pairs",
    default=None,
    help="交易对，逗号分隔，例如 BTC/USDT,ETH/USDT",
)
def run(signals: str, pairs: str | None) -> None:
    """启动纸交易会话，使用 Ctrl+C 停止。

    行情轮询 → AI 信号 → 决策 → 风控 → 纸交易执行
    """
    settings = get_settings()
    if pairs:
        settings = settings.with_changes(trading_pairs=pairs)
    setup_logging(settings)
    logger = get_logger("signal_trader.main")

    # 确保目录存在
    settings.ensure_directories()

    # 验证配置
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)
        logger.error(
            "live_execution_unavailable",
            hint="当前版本只支持纸交易，请设置 MODE=paper",
        )
        sys.exit(1)

    if signals == "openrouter" and not settings.openrouter_api_key:
        logger.error("missing_required_config", missing_keys=["OPENROUTER_API_KEY"])
        sys.exit(1)

    logger.info(
        "starting_session",
        mode=settings.mode.value,
        signals=signals,
        trading_pairs=settings.trading_pairs,
    )
    try:
        asyncio.run(_run_session(settings, signals))
    except KeyboardInterrupt:
        logger.info("session_interrupted", message="User stopped session")
    except SessionStartError as e:
        logger.error("session_start_failed", error=str(e))
        sys.exit(1)


async def _run_session(settings: Settings, signals_kind: str) -> None:
    bus = EventBus()
    journal = JournalStore(settings.journal_dir)
    recovery = RecoverySystem(
        settings,
        bus,
        store=JsonFileStateStore(settings.state_path),
        journal=journal,
    )
    exchange = PaperExchange(
        settings.journal_dir / "paper_exchange.json",
        market_data=BinanceMarketData(settings),
        quote_currency=settings.quote_currency,
        initial_balance=settings.paper_initial_balance,
        slippage_bps=settings.paper_slippage_bps,
        fee_rate=settings.paper_fee_rate,
    )
    feed = PollingMarketFeed(
        exchange,
        settings.trading_pairs,
        interval=settings.market_data_interval,
        recovery=recovery,
    )
    provider: SignalProvider
    if signals_kind == "openrouter":
        provider = OpenRouterSignalProvider(settings)
    else:
        provider = HeuristicSignalProvider()

    session = TradingSession(
        settings,
        exchange=exchange,
        signals=provider,
        bus=bus,
        feed=feed,
        journal=journal,
        recovery=recovery,
    )
    await session.start()
    try:
        await asyncio.Event().wait()
    finally:
        await session.stop()


@cli.command()
def status() -> None:
    """显示配置摘要和最近一次保存的系统状态。"""
    settings = get_settings()
    setup_logging(settings)

    click.echo("=" * 50)
    click.echo("Signal Trader - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Trading pairs: {', '.join(settings.trading_pairs)}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.binance_api_key else "[--] Not configured"
    openrouter_status = "[OK] Configured" if settings.openrouter_api_key else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   OpenRouter API: {openrouter_status}")
    click.echo(f"   LLM Model: {settings.openrouter_model}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Max daily loss: {settings.max_daily_loss}")
    click.echo(f"   Max position size: {settings.max_position_size}")
    click.echo(f"   Stop loss: {settings.stop_loss_percentage}%")
    click.echo(f"   Max open positions: {settings.max_open_positions}")
    click.echo(f"   Min confidence: {settings.min_confidence_threshold}")
    click.echo(f"   Emergency stop: {'enabled' if settings.emergency_stop_enabled else 'disabled'}")
    click.echo()

    # 持久化状态
    click.echo("[Saved State]")
    try:
        state = JsonFileStateStore(settings.state_path).load()
    except PersistenceError as e:
        click.echo(f"   [ERROR] {e}")
        state = None
    if state is None:
        click.echo(f"   No snapshot at {settings.state_path}")
    else:
        click.echo(f"   Saved at: {state.last_save_time.isoformat()}")
        click.echo(f"   Running: {'Yes' if state.is_running else 'No'}")
        click.echo(f"   Open positions: {len(state.active_positions)}")
        for position in state.active_positions:
            click.echo(
                f"     - {position.symbol} {position.side} {position.amount} "
                f"@ {position.entry_price} (PnL {position.unrealized_pnl:.2f})"
            )
        click.echo(f"   Pending signals: {len(state.pending_signals)}")
        for service, count in sorted(state.error_counts.items()):
            click.echo(f"   Errors [{service}]: {count}")
        for service, breaker in sorted(state.circuit_breakers.items()):
            if breaker.is_open:
                click.echo(f"   [OPEN] Circuit breaker {service} until {breaker.next_retry_time}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require full API configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command("reset-errors")
@click.argument("service", type=click.Choice(list(SERVICES)))
def reset_errors(service: str) -> None:
    """清除已保存状态中某个服务的错误计数和熔断器。"""
    settings = get_settings()
    setup_logging(settings)

    store = JsonFileStateStore(settings.state_path)
    recovery = RecoverySystem(settings, EventBus(), store=store)
    if recovery.restore() is None:
        click.echo(f"No snapshot at {settings.state_path}")
        return
    recovery.reset_error_tracking(service)
    if not recovery.save_state():
        click.echo("[ERROR] Failed to save state")
        sys.exit(1)
    click.echo(f"[OK] Error tracking reset for {service}")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("signal_trader.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Model validation"),
        ("pydantic_settings", "Configuration loading"),
        ("httpx", "HTTP client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Binance market data"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m signal_trader.main 调用
if __name__ == "__main__":
    cli()
