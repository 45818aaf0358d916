#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from sda.broker import ConnectionWatcher, create_broker_from_env
from sda.config import load_config
from sda.copy_worker import create_copy_worker
from sda.database import create_repository_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Copy accessioned files from archive to backup storage.")
    parser.add_argument(
        "--max-messages",
        type=int,
        default=0,
        help="Stop after N messages (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config("sync")
    broker = create_broker_from_env()
    worker = create_copy_worker(config=config, broker=broker, repository=create_repository_from_env())

    watcher = ConnectionWatcher(broker, interval_s=config.broker.watch_interval_s)
    watcher.start()
    try:
        stats = worker.run_forever(stop_after_messages=args.max_messages or None)
    finally:
        watcher.stop()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
