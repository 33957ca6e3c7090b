# src/taskdesk_sync/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then starts:
- the realtime connector in a background thread,
- the console REPL in the main thread.
"""

from __future__ import annotations

import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..connectors.realtime_runner import start_realtime_in_background
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_file = setup_logging(
        log_dir=settings.data_dir,
        log_name=settings.app_name,
        console_level=console_level,
    )

    logger.info("Starting %s (full log: %s)...", settings.app_name, log_file)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)
    logger.info(
        "Client id %s, %d message(s) pending from a previous run.",
        state.client_id,
        len(state.queue),
    )

    runner = start_realtime_in_background(state)

    try:
        run_console_loop(state)
    finally:
        if runner is not None:
            runner.stop()
            runner.join(timeout=10.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
