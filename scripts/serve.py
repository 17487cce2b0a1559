#!/usr/bin/env python3
"""Run the crowdstock HTTP surface, optionally forwarding changes over MQTT.

Configuration comes from ``CROWDSTOCK_*`` / ``CROWDSTOCK_MQTT_*``
environment variables.  When ``CROWDSTOCK_HISTORY_PATH`` is set, state is
restored from that log on startup and every accepted report is written
through to it.

Usage
-----
::

    export CROWDSTOCK_HISTORY_PATH=./reports.jsonl
    python scripts/serve.py --port 8080
    python scripts/serve.py --mqtt        # also forward to the configured broker
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from aiohttp import web

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from crowdstock import AggregationEngine, MqttConfig  # noqa: E402
from crowdstock._mqtt import MqttEventForwarder  # noqa: E402
from crowdstock.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the crowdstock engine over HTTP.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--mqtt", action="store_true", help="Forward change events to MQTT")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = AggregationEngine.from_env()
    engine.restore()
    app = create_app(engine)

    if args.mqtt:
        forwarder = MqttEventForwarder(MqttConfig.from_env(), engine.subscribe(name="mqtt-forwarder"))

        async def _start_forwarder(_app: web.Application) -> None:
            forwarder.start()

        async def _stop_forwarder(_app: web.Application) -> None:
            forwarder.stop()

        app.on_startup.append(_start_forwarder)
        app.on_cleanup.append(_stop_forwarder)

    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
