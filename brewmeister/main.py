import argparse
import asyncio
import logging
import sys

import uvicorn

from brewmeister.domain.device_actor import open_device
from brewmeister.domain.errors import DeviceError
from brewmeister.infra.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from brewmeister.interfaces.api import create_app

logger = logging.getLogger("brewmeister")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Brewmeister backend")
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--use-mock",
        action="store_true",
        help="Use a mock device instead of the real Brewslave",
    )
    return parser.parse_args(argv)


async def serve(cfg: AppConfig) -> int:
    # Open the device before serving so a dead serial link is reported once.
    try:
        device = await open_device(cfg)
    except DeviceError as exc:
        logger.error("Cannot start device: %s", exc)
        return 1

    app = create_app(config=cfg, device=device)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=cfg.network.host,
            port=cfg.network.api_port,
            log_level=cfg.log_level.lower(),
        )
    )
    await server.serve()
    return 0


def main(argv=None) -> None:
    args = parse_args(argv)

    cfg: AppConfig = load_config(args.config)
    if args.use_mock:
        cfg.device.use_mock = True

    logging.basicConfig(
        level=cfg.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sys.exit(asyncio.run(serve(cfg)))


if __name__ == "__main__":
    main()
