"""
Run the expiry sweep once (cron / task scheduler entry point).

Expires sent quotations past their validity deadline and times out overdue
approval steps, then hands the resulting events to notifications.
"""
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quoteflow import create_app  # noqa: E402
from quoteflow.services import workflow  # noqa: E402
from quoteflow.services.notifications import dispatch_events  # noqa: E402


def main():
    app = create_app()
    with app.app_context():
        result = workflow.evaluate_expired()
        dispatch_events(result["events"])
        print(f"[INFO] expired={result['expired']} timed_out_chains={result['timed_out_chains']} "
              f"skipped={result['skipped']} skipped_steps={result['skipped_steps']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
