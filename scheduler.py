import asyncio
import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set, Union

from messaging import MessagingError, MessagingPort
from payment_service import PaymentService
from session_store import SessionStore

logger = logging.getLogger(__name__)

SESSION_CLEANUP_INTERVAL = 60 * 60
TRANSACTION_EXPIRY_INTERVAL = 5 * 60

_PERMANENT_ERRORS = ("blocked", "user not found", "chat not found", "deactivated")

# Strong references to detached tasks so they are not garbage collected mid-run.
_detached: Set[asyncio.Task] = set()


def _on_detached_done(task: asyncio.Task) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Detached task {task.get_name()} failed: {exc!r}", exc_info=exc)


def spawn_detached(coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
    """Run ``coro`` in the background without awaiting it.

    Failures are logged when the task finishes; the caller never sees them.
    """
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _detached.add(task)
    task.add_done_callback(_on_detached_done)
    return task


def pending_detached() -> int:
    return len(_detached)


async def notify_user(messenger: MessagingPort, chat_id: int, text: str, retries: int = 3) -> bool:
    """
    Sends a notification to a user with retry logic.
    """
    for attempt in range(retries):
        try:
            await messenger.send_message(chat_id, text)
            return True
        except MessagingError as e:
            msg = str(e).lower()
            if any(marker in msg for marker in _PERMANENT_ERRORS):
                logger.error(f"Cannot send message to user {chat_id}: {e}")
                return False

            logger.error(f"Failed to send message to user {chat_id} (Attempt {attempt + 1}/{retries}): {e}")
            if attempt < retries - 1:
                await asyncio.sleep(2 * (attempt + 1))
    return False


def cleanup_sessions(sessions: SessionStore, hours_old: float) -> int:
    logger.info("Starting idle session cleanup.")
    start_time = datetime.now()
    removed = sessions.cleanup_expired(hours_old)
    logger.info(f"Session cleanup completed. Removed {removed} sessions in {datetime.now() - start_time}.")
    return removed


def expire_transactions(payments: PaymentService) -> int:
    return payments.expire_overdue()


async def periodic_loop(name: str, interval: float, job: Callable[[], Union[int, Awaitable[int]]]) -> None:
    """
    Runs ``job`` every ``interval`` seconds until cancelled.
    """
    logger.info(f"Scheduler job '{name}' started (every {interval:.0f}s).")
    while True:
        try:
            await asyncio.sleep(interval)
            result = job()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            logger.info(f"Scheduler job '{name}' cancelled.")
            break
        except Exception as e:
            logger.exception(f"Error in scheduler job '{name}': {e}")


def start_scheduler(
    sessions: SessionStore,
    payments: PaymentService,
    session_hours: float,
    cleanup_interval: float = SESSION_CLEANUP_INTERVAL,
    expiry_interval: float = TRANSACTION_EXPIRY_INTERVAL,
) -> List[asyncio.Task]:
    """
    Starts the session cleanup and transaction expiry jobs as background tasks.
    """
    return [
        asyncio.create_task(
            periodic_loop("session-cleanup", cleanup_interval, lambda: cleanup_sessions(sessions, session_hours)),
            name="session-cleanup",
        ),
        asyncio.create_task(
            periodic_loop("transaction-expiry", expiry_interval, lambda: expire_transactions(payments)),
            name="transaction-expiry",
        ),
    ]
