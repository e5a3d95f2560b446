"""Run the gateway: python -m wa_gateway [--port N] [--webhook-url URL] ..."""

import argparse

import logfire
from aiohttp import web

from .config import Settings
from .gateway import Gateway
from .observability import configure
from .server import create_app


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wa-gateway",
        description="Bridge a messaging web session to HTTP and a webhook.",
    )
    parser.add_argument("--port", type=int, help="Listening port (env PORT, default 3000)")
    parser.add_argument("--host", help="Bind address (env HOST, default 0.0.0.0)")
    parser.add_argument("--webhook-url", help="Where inbound messages are POSTed (env WEBHOOK_URL)")
    parser.add_argument("--bridge-url", help="Browser bridge websocket (env BRIDGE_URL)")
    parser.add_argument("--base-path", help="Extra route prefix (env BASE_PATH, default /wa-api)")
    parser.add_argument("--debug", action="store_true", default=None, help="Log to console")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = Settings.from_env().with_overrides(
        port=args.port,
        host=args.host,
        webhook_url=args.webhook_url,
        bridge_url=args.bridge_url,
        base_path=args.base_path,
        debug=args.debug,
    )
    configure("wa_gateway", debug=settings.debug)

    app = create_app(Gateway(settings))
    logfire.info("Server is running on port {port}", port=settings.port)
    web.run_app(app, host=settings.host, port=settings.port, print=None)


if __name__ == "__main__":
    main()
