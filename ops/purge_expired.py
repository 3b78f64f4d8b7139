"""Expiry sweep for the idempotency store (cron / manual)."""
from contractnest_edge.core.idempotency_store import get_idempotency_store
from contractnest_edge.core.logging import get_logger, log_event


def main() -> None:
    logger = get_logger()
    store = get_idempotency_store()
    purged = store.purge_expired()
    log_event(logger, event_name="records_purged", fields={"purged": purged, "source": "ops"})
    print(f"Purged {purged} expired/abandoned idempotency records")


if __name__ == "__main__":
    main()
