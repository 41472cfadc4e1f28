import argparse

import uvicorn

from nexcook.infra.config import DeviceConfig, load_config
from nexcook.infra.logging_setup import setup_logging
from nexcook.interfaces.api import create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nexcook cooking appliance backend")
    parser.add_argument(
        "--config",
        type=str,
        default="config/nexcook.yaml",
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override network.api_port from the config file",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    cfg: DeviceConfig = load_config(args.config)
    if args.port is not None:
        cfg.network.api_port = args.port

    setup_logging(cfg.logging.level)

    app = create_app(config=cfg, config_path=args.config)

    uvicorn.run(
        app,
        host=cfg.network.host,
        port=cfg.network.api_port,
    )


if __name__ == "__main__":
    main()
