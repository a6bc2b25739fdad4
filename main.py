#!/usr/bin/env python3
"""
Main entry point for the game top-up storefront bot.

This module integrates all components:
- Configuration management
- Database initialization
- Service wiring (catalog, payments, provider, reconciler)
- Bot and dispatcher setup
- Handler registration
- Background jobs and the payment webhook
- Graceful shutdown handling
"""

import asyncio
import argparse
import logging
import sys
import signal
from typing import Any, Dict, List, Optional

from aiogram import Bot, Dispatcher
from aiogram.exceptions import TelegramAPIError
from aiohttp import web

import config
import db
import scheduler
import webhook_server
from admin_handlers import admin_router
from callback_router import CallbackRouter
from catalog import CatalogService
from messaging import AiogramMessenger
from order_flow import OrderFlow
from payment_gateway import PaymentGatewayClient
from payment_service import PaymentService
from providers import GameProviderService, VipResellerClient
from rate_limiter import RateLimiter
from reconciler import TransactionReconciler
from session_lock import SessionLock
from session_store import SessionStore
from ui_persistence import UIPersistence
from user_handlers import user_router


def setup_logging(debug: bool = False) -> None:
    """Configure logging level and format.

    Args:
        debug: If True, set level to DEBUG, otherwise INFO
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logger = logging.getLogger(__name__)
    if debug:
        logger.info("Debug logging enabled")


async def verify_configuration() -> bool:
    """Verify critical configuration settings on startup.

    Returns:
        True if configuration is valid, False otherwise
    """
    logger = logging.getLogger(__name__)

    missing = config.missing_required()
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        return False

    if not (config.PAYMENT_API_ID and config.PAYMENT_API_KEY):
        logger.warning("Payment gateway credentials not set, invoices will be simulated")
    if not (config.PROVIDER_API_ID and config.PROVIDER_API_KEY):
        logger.warning("Game provider credentials not set, nickname checks and fulfilment are disabled")
    if not config.PAYMENT_CALLBACK_URL:
        logger.warning("PAYMENT_CALLBACK_URL not set, the gateway cannot reach the webhook")

    logger.info("Configuration verification completed successfully")
    logger.info(f"Admin ID: {config.ADMIN_ID}")
    logger.info(f"Store name: {config.STORE_NAME}")
    logger.info(f"Webhook: {config.WEBHOOK_HOST}:{config.WEBHOOK_PORT}{config.WEBHOOK_PATH}")
    return True


def build_services(bot: Bot) -> Dict[str, Any]:
    """Create every service the handlers and background jobs need.

    Args:
        bot: Bot instance used for outgoing messages

    Returns:
        Mapping of service name to instance. Handler-facing entries are
        passed to the dispatcher as workflow data.
    """
    logger = logging.getLogger(__name__)

    messenger = AiogramMessenger(bot)
    sessions = SessionStore(ttl_hours=config.SESSION_TTL_HOURS, expiry_days=config.SESSION_EXPIRY_DAYS)
    ui = UIPersistence(messenger, sessions)
    catalog = CatalogService()

    gateway = PaymentGatewayClient(
        api_id=config.PAYMENT_API_ID,
        api_key=config.PAYMENT_API_KEY,
        base_url=config.PAYMENT_BASE_URL,
        callback_url=config.PAYMENT_CALLBACK_URL,
        return_url=config.PAYMENT_RETURN_URL,
        expiry_hours=config.PAYMENT_EXPIRY_HOURS,
    )
    payments = PaymentService(gateway, timeout=config.API_TIMEOUT_SECONDS, qr_image_url=config.QR_IMAGE_URL)

    provider: Optional[GameProviderService] = None
    provider_client = VipResellerClient(config.PROVIDER_API_ID, config.PROVIDER_API_KEY, config.PROVIDER_BASE_URL)
    if provider_client.configured:
        provider = GameProviderService(provider_client, timeout=config.API_TIMEOUT_SECONDS)

    reconciler = TransactionReconciler(
        gateway,
        provider=provider,
        messenger=messenger,
        ui=ui,
        admin_id=config.ADMIN_ID,
        timeout=config.API_TIMEOUT_SECONDS,
    )

    lock = SessionLock(timeout=config.LOCK_TIMEOUT_SECONDS)
    interaction_limiter = RateLimiter(limit=config.RATE_LIMIT_SECONDS, name="interaction")
    notice_limiter = RateLimiter(limit=config.RATE_LIMIT_NOTICE_SECONDS, name="rate-limit-notice")
    nickname_limiter = RateLimiter(
        window=config.NICKNAME_WINDOW_SECONDS,
        max_requests=config.NICKNAME_MAX_REQUESTS,
        name="nickname-check",
    )

    flow = OrderFlow(
        sessions,
        ui,
        catalog,
        payments,
        reconciler,
        lock,
        nickname_limiter,
        provider=provider,
        page_size=config.PAGE_SIZE,
        history_limit=config.HISTORY_LIMIT,
    )
    logger.info(f"Services ready (gateway simulated: {gateway.simulated}, provider: {provider is not None})")

    return {
        "sessions": sessions,
        "catalog": catalog,
        "gateway": gateway,
        "payments": payments,
        "provider": provider,
        "reconciler": reconciler,
        "lock": lock,
        "interaction_limiter": interaction_limiter,
        "notice_limiter": notice_limiter,
        "nickname_limiter": nickname_limiter,
        "flow": flow,
        "callbacks": CallbackRouter(flow),
    }


async def setup_bot_and_dispatcher() -> tuple[Bot, Dispatcher, Dict[str, Any]]:
    """Create and configure bot and dispatcher instances.

    Returns:
        Tuple of (Bot, Dispatcher, services)
    """
    logger = logging.getLogger(__name__)

    # Create bot instance
    bot = Bot(token=config.BOT_TOKEN)
    logger.info("Bot instance created")

    services = build_services(bot)

    # Order state lives in SQLite sessions, not in aiogram FSM storage
    dp = Dispatcher()
    for key in ("flow", "callbacks", "interaction_limiter", "notice_limiter", "payments", "reconciler"):
        dp[key] = services[key]
    logger.info("Dispatcher created")

    return bot, dp, services


def register_handlers(dp: Dispatcher) -> None:
    """Register all handlers with the dispatcher.

    Args:
        dp: Dispatcher instance to register handlers with
    """
    logger = logging.getLogger(__name__)

    # Admin commands first: the user router catches every text message
    dp.include_router(admin_router)
    logger.info("Admin handlers registered")

    dp.include_router(user_router)
    logger.info("User handlers registered")


async def sync_catalog(services: Dict[str, Any]) -> None:
    """Refresh games, products and payment channels from the remote APIs."""
    logger = logging.getLogger(__name__)

    provider = services["provider"]
    if provider is None:
        logger.warning("Catalog sync skipped: game provider not configured")
    else:
        stats = await services["catalog"].sync_from_provider(provider)
        logger.info(f"Catalog synced: {stats}")

    try:
        count = await services["payments"].sync_payment_channels()
        logger.info(f"Payment channels synced: {count}")
    except Exception as e:
        logger.exception(f"Payment channel sync failed: {e}")


def start_background_jobs(services: Dict[str, Any], skip_scheduler: bool) -> List[asyncio.Task]:
    """Start the sweepers and, unless disabled, the scheduler jobs.

    Args:
        services: Services built by :func:`build_services`
        skip_scheduler: If True, don't start the cleanup and expiry jobs

    Returns:
        Started background tasks
    """
    logger = logging.getLogger(__name__)

    tasks = [
        services["lock"].start_sweeper(config.LOCK_SWEEP_SECONDS),
        services["interaction_limiter"].start_sweeper(config.RATE_LIMIT_SWEEP_SECONDS),
        services["notice_limiter"].start_sweeper(config.RATE_LIMIT_SWEEP_SECONDS),
        services["nickname_limiter"].start_sweeper(config.RATE_LIMIT_SWEEP_SECONDS),
    ]

    if skip_scheduler:
        logger.info("Scheduler disabled via CLI argument")
        return tasks

    try:
        tasks.extend(scheduler.start_scheduler(
            services["sessions"],
            services["payments"],
            session_hours=config.SESSION_CLEANUP_HOURS,
        ))
        logger.info("Session cleanup and transaction expiry scheduler started")
    except Exception as e:
        logger.exception(f"Failed to start scheduler: {e}")
    return tasks


async def startup_hooks(bot: Bot) -> None:
    """Execute startup hooks before starting polling.

    Args:
        bot: Bot instance
    """
    logger = logging.getLogger(__name__)

    # Log startup message
    logger.info("=" * 50)
    logger.info("🚀 BOT STARTED")
    logger.info("=" * 50)

    # Test bot connection
    try:
        bot_info = await bot.get_me()
        logger.info(f"Bot connected successfully: @{bot_info.username} (ID: {bot_info.id})")
    except TelegramAPIError as e:
        logger.error(f"Failed to connect to Telegram API: {e}")
        raise RuntimeError("Failed to connect to Telegram API") from e


async def shutdown_hooks(
    bot: Optional[Bot],
    tasks: List[asyncio.Task],
    runner: Optional[web.AppRunner],
) -> None:
    """Execute cleanup hooks on shutdown.

    Args:
        bot: Bot instance
        tasks: Background tasks to cancel
        runner: Webhook runner to stop, if started
    """
    logger = logging.getLogger(__name__)

    logger.info("🛑 Bot stopping...")

    # Cancel background tasks
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception(f"Error stopping {task.get_name()}: {e}")
    if tasks:
        logger.info("Background jobs stopped")

    pending = scheduler.pending_detached()
    if pending:
        logger.warning(f"{pending} detached tasks still running at shutdown")

    if runner is not None:
        logger.info("Stopping payment webhook...")
        try:
            await runner.cleanup()
            logger.info("Payment webhook stopped")
        except Exception as e:
            logger.exception(f"Error stopping webhook: {e}")

    # Close bot session
    if bot is not None:
        logger.info("Closing bot session...")
        try:
            await bot.session.close()
            logger.info("Bot session closed")
        except Exception as e:
            logger.exception(f"Error closing bot session: {e}")

    logger.info("=" * 50)
    logger.info("⏹️  BOT STOPPED")
    logger.info("=" * 50)


async def main() -> None:
    """Main function that orchestrates the entire bot startup and execution.

    This function:
    1. Parses CLI arguments
    2. Sets up logging and verifies configuration
    3. Initializes database
    4. Creates bot, dispatcher and services
    5. Registers handlers
    6. Optionally syncs the catalog
    7. Starts background jobs and the payment webhook
    8. Starts polling with graceful shutdown handling
    9. Executes shutdown hooks
    """
    # Parse CLI arguments
    parser = argparse.ArgumentParser(description="Game Top-up Storefront Bot")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable DEBUG level logging"
    )
    parser.add_argument(
        "--skip-scheduler",
        action="store_true",
        help="Skip starting the session cleanup and transaction expiry jobs (for testing)"
    )
    parser.add_argument(
        "--sync-catalog",
        action="store_true",
        help="Refresh games, products and payment channels before polling"
    )
    args = parser.parse_args()

    # Setup logging
    setup_logging(debug=args.debug)
    logger = logging.getLogger(__name__)

    if not await verify_configuration():
        logger.error("Configuration verification failed. Aborting startup.")
        raise RuntimeError("Configuration verification failed")

    bot: Optional[Bot] = None
    tasks: List[asyncio.Task] = []
    runner: Optional[web.AppRunner] = None

    try:
        # Database initialization (creates tables if not exist)
        logger.info("Initializing database...")
        db.configure(config.DB_URI)
        logger.info("Database initialized")

        # Setup bot, dispatcher and services
        bot, dp, services = await setup_bot_and_dispatcher()

        # Register handlers
        register_handlers(dp)

        # Execute startup hooks
        await startup_hooks(bot)

        if args.sync_catalog:
            await sync_catalog(services)

        tasks = start_background_jobs(services, args.skip_scheduler)

        app = webhook_server.create_app(services["gateway"], services["reconciler"], config.WEBHOOK_PATH)
        runner = await webhook_server.start_webhook(app, config.WEBHOOK_HOST, config.WEBHOOK_PORT)

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}")
            raise KeyboardInterrupt()

        # Register signal handlers for graceful shutdown
        if hasattr(signal, 'SIGINT'):
            signal.signal(signal.SIGINT, signal_handler)
        if hasattr(signal, 'SIGTERM'):
            signal.signal(signal.SIGTERM, signal_handler)

        # Start polling for updates
        logger.info("Starting bot polling...")
        await dp.start_polling(bot, handle_signals=False)

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Bot startup or runtime error: {e}")
        raise
    finally:
        # Execute shutdown hooks
        await shutdown_hooks(bot, tasks, runner)


if __name__ == "__main__":
    # Run the main function
    asyncio.run(main())
