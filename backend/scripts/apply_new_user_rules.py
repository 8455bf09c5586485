import argparse

from freeride.core.config import settings
from freeride.core.logging import configure_logging
from freeride.db.session import session_scope
from freeride.services.free_days import apply_auto_rules_to_new_user


def main(argv=None):
    parser = argparse.ArgumentParser(description="Grant the active NEW_USERS free days rules to a rider.")
    parser.add_argument("user_id")
    args = parser.parse_args(argv)

    configure_logging(settings.LOG_LEVEL)
    with session_scope() as db:
        granted = apply_auto_rules_to_new_user(db, args.user_id)
        print(f"ok: {len(granted)} free days grants created for rider {args.user_id}")


if __name__ == "__main__":
    main()
