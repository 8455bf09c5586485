from freeride.core.config import settings
from freeride.core.logging import configure_logging
from freeride.db.session import SessionLocal
from freeride.services.free_days import apply_rules_by_registration_days


def main():
    configure_logging(settings.LOG_LEVEL)
    db = SessionLocal()
    try:
        result = apply_rules_by_registration_days(db)
        db.commit()
        print(
            "ok: free days registration sweep completed "
            f"(rules={result.rules}, granted={result.granted}, skipped={result.skipped})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
