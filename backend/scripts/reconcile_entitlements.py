import logging

from app.api.deps import get_provider
from app.core.config import settings
from app.db.session import SessionLocal
from app.services.reconciler import resync_stale_entitlements


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db = SessionLocal()
    try:
        result = resync_stale_entitlements(db, get_provider(), limit=settings.RECONCILE_BATCH_LIMIT)
        print(
            "ok: entitlement resync completed "
            f"(processed={result['processed']}, updated={result['updated']}, errors={result['errors']})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
