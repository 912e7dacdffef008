"""
courier entry point.
Wires the queue store, transport and outbox engine, then listens for queued
messages until SIGINT/SIGTERM.
"""

import asyncio
import logging
import os
import signal

from pydantic import ValidationError

from .config import Settings, get_settings
from .exceptions import ConfigurationError, CourierError
from .logging_config import setup_logging
from .outbox import ClaimDispatcher, DispatchPool, NotificationListener, PendingDrainer
from .store.base import OutboxStore
from .transport.base import Transport

logger = logging.getLogger(__name__)


def load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


def build_store(settings: Settings) -> OutboxStore:
    if settings.store_backend == "sqlite":
        from .store.sqlite import SQLiteOutboxStore
        return SQLiteOutboxStore(settings.db_path, notify_channel=settings.outbox_channel)

    from .store.postgres import PostgresOutboxStore
    return PostgresOutboxStore(
        settings.database_url,
        schema=settings.postgres_schema,
        notify_channel=settings.outbox_channel,
        pool_min_size=settings.postgres_pool_min_size,
        pool_max_size=settings.postgres_pool_max_size,
        create_schema=settings.postgres_create_schema,
        min_reconnect_interval=settings.listener_min_reconnect_interval,
        max_reconnect_interval=settings.listener_max_reconnect_interval,
    )


def build_transport(settings: Settings) -> Transport:
    if settings.transport_backend == "telegram":
        from .transport.telegram import TelegramTransport
        return TelegramTransport(token=settings.telegram_bot_token)

    from .transport.http import HttpGatewayTransport
    return HttpGatewayTransport(
        base_url=settings.gateway_base_url,
        api_key=settings.gateway_api_key,
        session=settings.gateway_session,
        timeout=settings.gateway_timeout,
        account_id=settings.account_id,
    )


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops; fall back to a plain handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop.set))


async def run(
    settings: Settings,
    stop: asyncio.Event | None = None,
    *,
    store: OutboxStore | None = None,
    transport: Transport | None = None,
    install_signals: bool = True,
) -> None:
    """Run the outbox engine until ``stop`` is set.

    Store or transport failures during startup propagate (CourierError).
    """
    store = store or build_store(settings)
    transport = transport or build_transport(settings)
    stop = stop or asyncio.Event()

    await store.init()
    try:
        stuck = await store.count_stuck_sending()
        if stuck:
            logger.warning(
                "%d outbox messages were left in 'sending' by a previous run and will not be retried",
                stuck,
            )

        await transport.start()
        dispatcher = ClaimDispatcher(store, transport, account_id=settings.account_id)
        pool = DispatchPool(dispatcher, settings.outbox_max_in_flight)
        drainer = PendingDrainer(store, pool)
        listener = NotificationListener(
            store,
            drainer,
            pool,
            channel=settings.outbox_channel,
            drain_interval=settings.outbox_drain_interval,
        )

        if install_signals:
            _install_signal_handlers(stop)

        try:
            await listener.listen(stop)
        finally:
            await pool.shutdown(settings.outbox_shutdown_timeout)
            await transport.close()
    finally:
        await store.close()


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        raise SystemExit(f"courier: {e}")

    os.makedirs(settings.data_dir, exist_ok=True)
    os.makedirs(settings.logs_dir, exist_ok=True)

    setup_logging(settings.log_level, settings.logs_dir, settings.json_logs)

    logger.info(
        "Starting courier (store=%s, transport=%s, channel=%s)",
        settings.store_backend,
        settings.transport_backend,
        settings.outbox_channel,
    )

    try:
        asyncio.run(run(settings))
    except CourierError as e:
        logger.critical("courier stopped: %s", e)
        raise SystemExit(1)

    logger.info("courier shut down")


if __name__ == "__main__":
    main()
