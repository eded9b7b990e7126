#!/usr/bin/env python3
"""Mark late rent payments overdue and send due-soon and overdue reminders."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from propertyhub.config import settings  # noqa: E402
from propertyhub.core.logging import configure_logging  # noqa: E402
from propertyhub.core.timeouts import shutdown_executor  # noqa: E402
from propertyhub.database import database  # noqa: E402
from propertyhub.services.notifications import notification_dispatcher  # noqa: E402
from propertyhub.services.rent import scan_rent_payments  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the rent due/overdue scan once.")
    parser.add_argument(
        "--window-days",
        type=int,
        default=settings.rent_reminder_window_days,
        help="Send due-soon reminders for payments due within this many days",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level, json=settings.is_production)
    database.init()
    try:
        with database.session() as session:
            result = scan_rent_payments(session, dispatcher=notification_dispatcher, window_days=args.window_days)
    finally:
        database.dispose()
        shutdown_executor()

    print(
        f"Marked overdue: {len(result.marked_overdue)}; "
        f"overdue reminders: {len(result.overdue_reminders)}; "
        f"due-soon reminders: {len(result.initial_reminders)}; "
        f"deliveries: {result.deliveries}"
    )


if __name__ == "__main__":
    main()
