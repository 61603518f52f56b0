#!/usr/bin/env python3
"""
This is a bridge between a Z-Wave network and a Qth (MQTT) broker.

It connects to a zwave-js-server instance and exposes every node value,
node attribute and controller operation as Qth topics.

zwave-qth-bridge
"""

# std libraries
import argparse
import asyncio
import signal
import sys

# local imports
from zwbridge import Broker, Driver, NetworkBridge
from zwbridge.Config import ConfigError, build_settings, load_config_file
from zwbridge.log import LOGGER, set_basic_config

VERSION = "0.1.0"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="A Qth/ZWave bridge")
    parser.add_argument("--config", "-f",
                        help="YAML config file with a 'general' section.")
    parser.add_argument("--mqtt-host", "-H", dest="mqtt_server",
                        help="MQTT broker host (default: localhost).")
    parser.add_argument("--mqtt-port", "-P", dest="mqtt_port", type=int,
                        help="MQTT broker port (default: 1883).")
    parser.add_argument("--qth-prefix", "-p", dest="qth_prefix",
                        help="Qth path prefix for zwave properties (default: sys/zwave/).")
    parser.add_argument("--zwave-server", "-z", dest="zwave_server",
                        help="zwave-js-server websocket URL (default: ws://localhost:3000).")
    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="Increase logging verbosity. May be used multiple times.")
    return parser.parse_args(argv)


async def run(settings) -> int:
    """Run the bridge until interrupted or until a background call fails."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    failed = []

    def on_unhandled(_loop, context):
        # device write failures and the like are fatal
        LOGGER.error(f"Fatal: {context.get('message')}", exc_info=context.get("exception"))
        failed.append(context)
        stop_event.set()

    loop.set_exception_handler(on_unhandled)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    broker = Broker(settings["client_id"], "A Qth/ZWave bridge")
    if not broker.start(settings["mqtt_server"], settings["mqtt_port"],
                        settings["mqtt_user"], settings["mqtt_password"], loop=loop):
        return 1
    bridge = NetworkBridge(broker, settings["qth_prefix"])
    driver = Driver(settings["zwave_server"], bridge)
    try:
        await driver.run(stop_event)
    finally:
        bridge.stop()
    return 1 if failed else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    set_basic_config(args.verbose)
    LOGGER.info(f"zwave-qth-bridge {VERSION}")
    try:
        settings = build_settings(vars(args), load_config_file(args.config))
    except ConfigError as ex:
        LOGGER.error(f"Configuration error: {ex}")
        return 2
    return asyncio.run(run(settings))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        LOGGER.warning("Received interrupt or exit...")
        sys.exit(0)
