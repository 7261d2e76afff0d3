"""Live status aggregation server for the personal dashboard."""
import argparse
import logging
import os
import sys
from typing import Any, Dict

import uvicorn

from config import load_config
from server import build_services, create_app

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_LOG_FILE = os.path.join(BASE_DIR, "statusboard.log")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser("Live status aggregation server")
    parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: PORT or 3000)")
    parser.add_argument("--data-dir", default=None, help="Directory for persisted JSON documents")
    parser.add_argument("--log-file", default=DEFAULT_LOG_FILE)
    parser.add_argument("--log-presence", action="store_true", help="Log every device status change")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


def setup_logging(log_file: str, verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


def log_presence(snapshot: Dict[str, Any]) -> None:
    """Presence sink: one line per device slot on every status change."""
    for slot, device in snapshot.items():
        app = (device.get("currentApp") or {}).get("name", "Unknown")
        logging.info(
            "Device %s (%s): status=%s app=%s uptime=%s battery=%s",
            slot,
            device.get("name"),
            device.get("status"),
            app,
            device.get("uptime", "-"),
            device.get("battery", "-"),
        )


def main() -> None:
    args = parse_args()
    setup_logging(args.log_file, args.verbose)
    config = load_config(data_dir=args.data_dir)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    services = build_services(config)
    if args.log_presence:
        services.presence.add_listener(log_presence)
        logging.info("Presence logging enabled")

    app = create_app(config, services)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    except KeyboardInterrupt:
        logging.info("Stopping server")


if __name__ == "__main__":
    main()
