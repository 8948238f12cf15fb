"""brewctl: talk to the Brewslave directly, without the backend running."""

import argparse
import asyncio
import logging
import random
import sys
from dataclasses import asdict

from brewmeister.domain.errors import DeviceError
from brewmeister.domain.models import MAX_TEMPERATURE, MIN_TEMPERATURE
from brewmeister.hardware.brewslave import BrewslaveClient
from brewmeister.infra.config import DEFAULT_CONFIG_PATH, load_config

logger = logging.getLogger("brewctl")


def temperature(value: str) -> float:
    t = float(value)
    if not MIN_TEMPERATURE <= t <= MAX_TEMPERATURE:
        raise argparse.ArgumentTypeError(
            f"Temperature must be between [{MIN_TEMPERATURE:.0f}, {MAX_TEMPERATURE:.0f}]"
        )
    return t


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Brewslave diagnostics")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML configuration file")
    parser.add_argument("--port", help="Serial device, overrides the configuration")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("read", help="Print the current device state")

    set_temp = sub.add_parser("set-temperature", help="Set a new target temperature")
    set_temp.add_argument("--target", type=temperature, required=True)

    stirrer = sub.add_parser("stirrer", help="Switch the stirrer")
    stirrer.add_argument("state", choices=["on", "off"])

    stress = sub.add_parser("stress-test", help="Repeated write/read round trips")
    stress.add_argument("--iterations", type=int, default=100)
    return parser.parse_args(argv)


async def stress_test(client: BrewslaveClient, iterations: int) -> int:
    """Return the number of failed round trips."""
    fails = 0
    for i in range(iterations):
        expected = round(random.uniform(MIN_TEMPERATURE, MAX_TEMPERATURE), 2)
        await client.set_temperature(expected)
        state = await client.read_state()
        if state.target_temperature is None or abs(state.target_temperature - expected) > 1e-3:
            logger.warning("[%d] failed to r/w temperature", i)
            fails += 1

        stirrer = random.random() < 0.5
        await client.set_stirrer(stirrer)
        state = await client.read_state()
        if state.stirrer_on != stirrer:
            logger.warning("[%d] failed to r/w stirrer", i)
            fails += 1

    print(f"{iterations * 2 - fails}/{iterations * 2} successful r/w operations")
    return fails


async def run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    port = args.port or cfg.serial.port
    client = await BrewslaveClient.open(port, cfg.serial.baudrate, cfg.serial.timeout)
    try:
        if args.command == "read":
            for key, value in asdict(await client.read_state()).items():
                print(f"{key}: {value}")
        elif args.command == "set-temperature":
            await client.set_temperature(args.target)
        elif args.command == "stirrer":
            await client.set_stirrer(args.state == "on")
        elif args.command == "stress-test":
            fails = await stress_test(client, args.iterations)
            return 1 if fails else 0
    finally:
        await client.close()
    return 0


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        code = asyncio.run(run(args))
    except DeviceError as exc:
        logger.error("%s", exc)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
