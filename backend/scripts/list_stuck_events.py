"""List webhook events that failed or never finished, oldest first.

Usage: python -m scripts.list_stuck_events [limit]
"""

import asyncio
import sys

from sunroad_billing.db import close_db, get_session_factory, init_db
from sunroad_billing.db.models.stripe_event import EventState
from sunroad_billing.services.event_ledger import EventLedger


async def main(limit: int) -> None:
    await init_db()
    try:
        ledger = EventLedger(get_session_factory())
        for state in (EventState.FAILED, EventState.PENDING):
            records = await ledger.list_by_state(state, limit=limit)
            print(f"{state.value}: {len(records)} event(s)")
            for record in records:
                print(
                    f"  {record.event_id} | {record.event_type} | attempts={record.attempts} "
                    f"| updated={record.updated_at} | {record.error or ''}"
                )
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main(int(sys.argv[1]) if len(sys.argv) > 1 else 50))
