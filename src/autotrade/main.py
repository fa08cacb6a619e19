"""CLI 入口模块 - autotrade 命令行接口。"""

import json
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import NoReturn

import click

from autotrade import __version__
from autotrade.ai.openrouter_client import build_reviewer
from autotrade.brokers.base import BrokerCredentials, BrokerFactory, BrokerSession
from autotrade.brokers.binance import BinanceBroker
from autotrade.brokers.paper import PaperBroker
from autotrade.config import Settings, get_settings
from autotrade.errors import AutotradeError
from autotrade.journal.store import JournalStore
from autotrade.lock.redis_store import RedisLockStore
from autotrade.lock.store import LockStore, MemoryLockStore
from autotrade.persistence.store import BotRepository, JsonRepository
from autotrade.pipeline import BotPipeline
from autotrade.scheduler import BotScheduler
from autotrade.service import BotControlService
from autotrade.strategy.evaluator import StrategyBook, StrategyEvaluator
from autotrade.types import Bot, RiskSettings, Timeframe
from autotrade.utils.logging import get_logger, setup_logging

# run 命令中与持久化状态对齐的间隔（秒）
_SYNC_INTERVAL_SECONDS = 30


@dataclass
class App:
    """装配好的运行时组件。"""

    settings: Settings
    repository: BotRepository
    lock_store: LockStore
    book: StrategyBook
    pipeline: BotPipeline
    scheduler: BotScheduler
    service: BotControlService

    def close(self) -> None:
        self.scheduler.shutdown(wait=True)


def build_lock_store(settings: Settings) -> LockStore:
    """配置了 REDIS_URL 时使用 Redis，否则使用进程内存储。"""
    if settings.redis_url:
        return RedisLockStore.from_url(settings.redis_url)
    return MemoryLockStore()


def build_broker_factory(settings: Settings) -> BrokerFactory:
    """按运行模式创建每个机器人的券商会话。"""
    if settings.is_live_mode:
        return lambda bot: BinanceBroker(testnet=settings.binance_testnet)

    feed = BinanceBroker(testnet=settings.binance_testnet)
    credentials = BrokerCredentials(
        api_key=settings.binance_api_key,
        api_secret=settings.binance_api_secret,
        is_demo=settings.binance_testnet,
    )

    def paper_factory(bot: Bot) -> BrokerSession:
        if not feed.is_connected():
            feed.connect(credentials)
        return PaperBroker(
            feed,
            settings.data_dir / "paper" / bot.id,
            slippage_bps=settings.paper_slippage_bps,
            initial_balance=settings.paper_initial_balance,
        )

    return paper_factory


def build_app(
    settings: Settings,
    *,
    repository: BotRepository | None = None,
    lock_store: LockStore | None = None,
    broker_factory: BrokerFactory | None = None,
) -> App:
    """装配仓储、锁存储、流水线、调度器与控制服务。"""
    settings.ensure_directories()
    repository = repository or JsonRepository(settings.data_dir)
    lock_store = lock_store or build_lock_store(settings)
    book = StrategyBook.with_builtins(settings.strategies_file)
    pipeline = BotPipeline(
        settings,
        repository=repository,
        lock_store=lock_store,
        broker_factory=broker_factory or build_broker_factory(settings),
        evaluator=StrategyEvaluator(book),
        journal=JournalStore(settings.journal_dir),
        reviewer=build_reviewer(settings),
    )
    scheduler = BotScheduler(repository, pipeline.run, max_workers=settings.max_workers)
    service = BotControlService(
        repository,
        scheduler,
        lock_store,
        book,
        pipeline=pipeline,
        timezone_name=settings.risk_timezone,
        starting_equity=settings.starting_equity,
        min_win_rate_pct=settings.alert_min_win_rate_pct,
        max_margin_usage_pct=settings.alert_max_margin_usage_pct,
    )
    return App(
        settings=settings,
        repository=repository,
        lock_store=lock_store,
        book=book,
        pipeline=pipeline,
        scheduler=scheduler,
        service=service,
    )


def _load_app() -> App:
    setup_logging()
    logger = get_logger("autotrade.main")
    settings = get_settings()

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

    return build_app(settings)


def _fail(exc: AutotradeError) -> NoReturn:
    click.echo(f"[ERROR] {exc}", err=True)
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """autotrade - 多机器人自动交易调度核心。

    按时间周期调度机器人，执行 行情 → 策略 → 风控 → 下单 流水线。
    """
    if version:
        click.echo(f"autotrade version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def run() -> None:
    """启动调度器并持续运行。

    为每个活跃机器人的时间周期创建触发器，使用 Ctrl+C 停止。
    """
    app = _load_app()
    logger = get_logger("autotrade.main")
    settings = app.settings

    logger.info(
        "starting_scheduler",
        mode=settings.mode.value,
        max_workers=settings.max_workers,
        timestamp=datetime.now().isoformat(),
    )

    try:
        app.scheduler.initialize()
        while True:
            time.sleep(_SYNC_INTERVAL_SECONDS)
            try:
                app.scheduler.sync()
            except AutotradeError as e:
                # 下一轮再试，不因单次失败而退出
                logger.warning("scheduler_sync_failed", error=str(e))
    except KeyboardInterrupt:
        logger.info("scheduler_interrupted", message="User stopped scheduler")
    finally:
        app.close()


@cli.command()
@click.argument("bot_id")
def once(bot_id: str) -> None:
    """对单个机器人执行一次流水线。"""
    app = _load_app()
    try:
        result = app.pipeline.run(bot_id)
    finally:
        app.close()

    click.echo(
        json.dumps(
            {
                "bot_id": result.bot_id,
                "status": result.status,
                "error": result.error,
                "warnings": result.warnings,
                "signal": asdict(result.signal) if result.signal else None,
                "trade": asdict(result.trade) if result.trade else None,
                "elapsed_ms": round(result.elapsed_ms, 2),
            },
            ensure_ascii=False,
            indent=2,
        )
    )


@cli.command("create-bot")
@click.option("--owner", "owner_id", required=True, help="所属用户 ID")
@click.option("--symbol", required=True, help="交易对，例如 BTCUSDT")
@click.option(
    "--timeframe",
    default="1h",
    show_default=True,
    type=click.Choice([tf.value for tf in Timeframe]),
    help="K 线周期",
)
@click.option("--strategy", "strategy_id", default="ma_crossover", show_default=True, help="策略 ID")
@click.option("--risk-pct", type=float, default=1.0, show_default=True, help="单笔风险（%）")
@click.option("--max-position-size", type=float, default=None, help="最大持仓数量")
@click.option("--max-daily-loss", type=float, default=None, help="单日最大亏损")
@click.option("--max-drawdown-pct", type=float, default=100.0, show_default=True, help="最大回撤（%）")
@click.option("--id", "bot_id", default=None, help="指定机器人 ID")
def create_bot(
    owner_id: str,
    symbol: str,
    timeframe: str,
    strategy_id: str,
    risk_pct: float,
    max_position_size: float | None,
    max_daily_loss: float | None,
    max_drawdown_pct: float,
    bot_id: str | None,
) -> None:
    """创建机器人（默认未激活）。"""
    app = _load_app()
    risk = RiskSettings(
        max_risk_per_trade_pct=risk_pct,
        max_position_size=max_position_size if max_position_size is not None else float("inf"),
        max_daily_loss=max_daily_loss if max_daily_loss is not None else float("inf"),
        max_drawdown_pct=max_drawdown_pct,
    )
    try:
        bot = app.service.create_bot(
            owner_id=owner_id,
            symbol=symbol,
            timeframe=timeframe,
            strategy_id=strategy_id,
            risk=risk,
            bot_id=bot_id,
        )
    except AutotradeError as e:
        _fail(e)
    finally:
        app.close()
    click.echo(bot.id)


@cli.command()
@click.argument("bot_id")
def start(bot_id: str) -> None:
    """激活机器人。"""
    app = _load_app()
    try:
        bot = app.service.start_bot(bot_id)
    except AutotradeError as e:
        _fail(e)
    finally:
        app.close()
    click.echo(f"[OK] {bot.id} started ({bot.timeframe.value})")


@cli.command()
@click.argument("bot_id")
def stop(bot_id: str) -> None:
    """停用机器人（不平仓）。"""
    app = _load_app()
    try:
        bot = app.service.stop_bot(bot_id)
    except AutotradeError as e:
        _fail(e)
    finally:
        app.close()
    click.echo(f"[OK] {bot.id} stopped")


@cli.command()
@click.argument("bot_id")
def status(bot_id: str) -> None:
    """显示机器人状态与当日统计。"""
    app = _load_app()
    try:
        bot_status = app.service.get_bot_status(bot_id)
    except AutotradeError as e:
        _fail(e)
    finally:
        app.close()

    stats = bot_status.daily_stats
    click.echo("=" * 50)
    click.echo(f"Bot {bot_status.id}")
    click.echo("=" * 50)
    click.echo(f"   Active: {'Yes' if bot_status.is_active else 'No'}")
    click.echo(f"   Last check: {bot_status.last_check or '-'}")
    click.echo(f"   Last trade: {bot_status.last_trade or '-'}")
    click.echo()
    click.echo("[Today]")
    click.echo(f"   Trades: {stats.trades}")
    click.echo(f"   Win rate: {stats.win_rate:.0%}")
    click.echo(f"   P&L: {stats.profit_loss:.2f}")
    perf = bot_status.performance
    if perf is not None:
        click.echo()
        click.echo("[Performance]")
        click.echo(f"   Trades: {perf.total_trades} (W {perf.winning_trades} / L {perf.losing_trades})")
        click.echo(f"   Win rate: {perf.win_rate_pct:.2f}%")
        click.echo(f"   Total P&L: {perf.total_profit_loss:.2f}")
        click.echo(f"   Avg win / loss: {perf.average_win:.2f} / {perf.average_loss:.2f}")
        click.echo(f"   Profit factor: {perf.profit_factor:.2f}")
        click.echo(f"   Max drawdown: {perf.max_drawdown_pct:.2f}%")
        click.echo(f"   Open positions: {perf.open_positions} (margin {perf.margin_usage_pct:.2f}%)")
        if perf.alerts:
            click.echo()
            click.echo("[Alerts]")
            for alert in perf.alerts:
                click.echo(f"   ! {alert}")
    if bot_status.errors:
        click.echo()
        click.echo("[Errors]")
        for message in bot_status.errors:
            click.echo(f"   - {message}")


@cli.command()
def bots() -> None:
    """列出所有机器人。"""
    app = _load_app()
    try:
        rows = app.service.list_bots()
    finally:
        app.close()

    if not rows:
        click.echo("No bots configured")
        return
    for bot in rows:
        marker = "[ON] " if bot.is_active else "[OFF]"
        click.echo(f"{marker} {bot.id}  {bot.symbol}  {bot.timeframe.value}  {bot.strategy_id}")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("autotrade.main")
    settings = get_settings()

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Binance API client"),
        ("redis", "Lock store"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 运行模式与配置
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"  Mode: {mode_text}")
    click.echo(f"  Lock store: {'redis' if settings.redis_url else 'memory'}")
    click.echo(f"  AI review: {'enabled' if settings.ai_review_enabled else 'disabled'}")
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            all_ok = False
            click.echo("  [ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("  [OK] Live mode configuration complete")

    click.echo()

    if all_ok:
        click.echo("[OK] All checks passed")
    else:
        click.echo("[ERROR] Some checks failed. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m autotrade.main 调用
if __name__ == "__main__":
    cli()
