"""
Engagement Worker Service

Runs the long-lived parts of the engagement engine in one process:

- Automation scheduler timers
- Delivery event consumer (XREADGROUP) applying events through the tracker
- PEL reclaim, with dead-lettering after MAX_DELIVERIES attempts
- Periodic reconciliation against provider statistics
- Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import logging
import os
import signal
import socket

from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import get_settings

from engagement_engine.contracts.envelope import DeliveryEnvelope
from engagement_engine.service.engine import EngagementEngine
from engagement_engine.service.tracker import DeliveryStatusTracker
from engagement_engine.streams.consumer import DeliveryEventConsumer
from engagement_engine.streams.groups import MAX_DELIVERIES, ensure_engagement_streams
from engagement_engine.streams.producer import DeliveryEventProducer

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

CONSUMER_NAME = settings.WORKER_CONSUMER_NAME or f"engagement-worker-{socket.gethostname()}-{os.getpid()}"


def apply_envelope(engine: EngagementEngine, envelope: DeliveryEnvelope) -> None:
    """Apply one event; raises so the message stays pending for reclaim."""
    with engine.session() as db:
        result = DeliveryStatusTracker(db).apply_event(envelope.event)
    logger.debug(
        "Applied delivery event",
        extra={"event_id": str(envelope.event_id), "applied": result.applied, "reason": result.reason},
    )


def process_messages(
    engine: EngagementEngine,
    consumer: DeliveryEventConsumer,
    messages: list[tuple[str, DeliveryEnvelope]],
) -> int:
    processed = 0
    for msg_id, envelope in messages:
        try:
            apply_envelope(engine, envelope)
            consumer.ack(msg_id)
            processed += 1
        except Exception as e:
            logger.error(f"Failed to apply delivery event {msg_id}: {e}", exc_info=True)
            # Not ACKed; the reclaim loop retries it
    return processed


def reclaim_pending(
    engine: EngagementEngine,
    consumer: DeliveryEventConsumer,
    producer: DeliveryEventProducer,
) -> int:
    """Retry idle pending events; dead-letter the ones that keep failing."""
    pending = consumer.get_pending(min_idle_ms=settings.RECLAIM_IDLE_MS)
    if not pending:
        return 0

    exhausted = {p["message_id"] for p in pending if p["delivery_count"] >= MAX_DELIVERIES}
    claimed = consumer.claim_messages([p["message_id"] for p in pending], min_idle_ms=settings.RECLAIM_IDLE_MS)

    retry = []
    for msg_id, envelope in claimed:
        if msg_id in exhausted:
            producer.publish_to_dlq(envelope, f"Failed after {MAX_DELIVERIES} deliveries")
            consumer.ack(msg_id)
            logger.warning(f"Moved delivery event {msg_id} to DLQ")
        else:
            retry.append((msg_id, envelope))

    return process_messages(engine, consumer, retry)


async def consume_loop(engine: EngagementEngine, redis_client, stop: asyncio.Event) -> None:
    consumer = DeliveryEventConsumer(redis_client, CONSUMER_NAME)
    while not stop.is_set():
        try:
            # Blocking XREADGROUP and database work run off the event loop so timers keep firing
            messages = await asyncio.to_thread(
                consumer.read_messages,
                settings.STREAM_BATCH_SIZE,
                settings.STREAM_BLOCK_MS,
            )
            if messages:
                processed = await asyncio.to_thread(process_messages, engine, consumer, messages)
                logger.info(f"Processed {processed}/{len(messages)} delivery events")
        except Exception as e:
            logger.error(f"Error in consume loop: {e}", exc_info=True)
            await asyncio.sleep(1)


async def reclaim_loop(engine: EngagementEngine, redis_client, stop: asyncio.Event) -> None:
    logger.info(
        f"Starting PEL reclaim loop "
        f"(interval={settings.RECLAIM_INTERVAL_SEC}s, idle_threshold={settings.RECLAIM_IDLE_MS}ms)"
    )
    consumer = DeliveryEventConsumer(redis_client, CONSUMER_NAME)
    producer = DeliveryEventProducer(redis_client)
    while not await _wait(stop, settings.RECLAIM_INTERVAL_SEC):
        try:
            reclaimed = await asyncio.to_thread(reclaim_pending, engine, consumer, producer)
            if reclaimed:
                logger.info(f"Reclaimed {reclaimed} delivery events")
        except Exception as e:
            logger.error(f"Error in reclaim loop: {e}", exc_info=True)


async def reconcile_loop(engine: EngagementEngine, stop: asyncio.Event) -> None:
    while not await _wait(stop, settings.RECONCILE_INTERVAL_SEC):
        summary = await engine.reconcile()
        logger.info("Reconciliation run", extra={k: summary.get(k) for k in ("total", "synced", "errors")})


async def _wait(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if shutdown was requested meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def main_loop() -> None:
    """Main worker loop."""
    redis_client = get_redis_client()
    ensure_engagement_streams(redis_client)

    engine = EngagementEngine(settings=settings)
    scheduler = engine.build_scheduler()
    armed = engine.start_scheduler(scheduler)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        f"Starting engagement worker "
        f"(consumer={CONSUMER_NAME}, automations={armed}, provider={settings.DELIVERY_PROVIDER})"
    )

    tasks = [
        asyncio.create_task(consume_loop(engine, redis_client, stop)),
        asyncio.create_task(reclaim_loop(engine, redis_client, stop)),
        asyncio.create_task(reconcile_loop(engine, stop)),
    ]

    await stop.wait()
    logger.info("Engagement worker shutting down gracefully")

    # In-flight automation batches finish; pending timers are dropped
    await scheduler.stop(wait=True)
    await asyncio.gather(*tasks, return_exceptions=True)
    await engine.close()


def main():
    """Entry point."""
    logger.info("Engagement worker starting...")
    asyncio.run(main_loop())


if __name__ == "__main__":
    main()
