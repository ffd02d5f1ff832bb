from __future__ import annotations

import argparse

import uvicorn

from apihub.core.config import get_settings


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the APIHub core service")
    parser.add_argument("--host", default=settings.api_host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    uvicorn.run("apihub.api.app:create_app", factory=True, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
