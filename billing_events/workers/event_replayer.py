"""
Event replay worker.

Inbound events are stored before processing. Any stored processor event
that still has no processed marker after ``event_replay_after_seconds`` is
processed again here. The processed marker keeps replays from applying an
event twice.

Events that keep failing for ``event_max_replay_age_hours`` are abandoned
by the event processor and drop out of the replay set.
"""
import asyncio
from datetime import timedelta
from typing import Dict

import structlog

from billing_events.database.models import utc_now
from billing_events.services import Services

from .runner import run_worker

logger = structlog.get_logger(__name__)


async def replay_unprocessed(services: Services, limit: int = 100) -> Dict[str, int]:
    cutoff = utc_now() - timedelta(seconds=services.settings.event_replay_after_seconds)
    events = await services.store.list_unprocessed(older_than=cutoff, limit=limit)

    counts: Dict[str, int] = {}
    for event in events:
        outcome = await services.event_processor.process_safely(event.id) or "failed"
        counts[outcome] = counts.get(outcome, 0) + 1

    if counts:
        logger.info("events_replayed", **counts)
    return counts


async def start_event_replayer() -> None:
    await run_worker(
        "event_replayer",
        lambda settings: settings.event_replay_interval_seconds,
        replay_unprocessed,
    )


def main() -> None:
    asyncio.run(start_event_replayer())


if __name__ == "__main__":
    main()
