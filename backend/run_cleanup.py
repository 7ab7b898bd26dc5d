"""Run the expired-state cleanup sweep as a standalone process."""

import argparse
import logging
import time

from inventory_backend.runtime import Runtime


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    runtime = Runtime()
    runtime.init_db()

    if args.once:
        runtime.cleanup.run_once()
        return

    runtime.cleanup.run_once()
    runtime.cleanup.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        runtime.cleanup.stop()


if __name__ == "__main__":
    main()
