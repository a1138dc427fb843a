"""PackRun entry point: python -m packrun"""

import argparse
import logging


def main():
    import packrun
    from packrun.runtime.config import load_packrun_config

    parser = argparse.ArgumentParser(description="PackRun group-run server")
    parser.add_argument("-V", "--version", action="version", version=f"packrun {packrun.__version__}")
    parser.add_argument("--host", default=None, help="Bind host (default: from config, 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from config, 3001)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging to console")
    args = parser.parse_args()

    # Console handler — controlled by --debug flag
    console_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=console_level,
        format="%(levelname)-8s %(name)s: %(message)s",
    )
    # The LogStore handler (DEBUG, full capture) is set up in server.py lifespan

    config = load_packrun_config()
    host = args.host or config.get("server.host", default="0.0.0.0")
    port = args.port or config.get("server.port", default=3001)

    import uvicorn

    from packrun.web.server import create_app

    server = uvicorn.Server(uvicorn.Config(
        create_app(config), host=host, port=port, log_level="info",
    ))

    # Override startup to print banner after uvicorn's own startup message
    _original_startup = server.startup

    async def _startup_with_banner(sockets=None):
        await _original_startup(sockets=sockets)
        print(f"\n  Pack server running on port {port}")
        print("  WebSocket endpoint: /ws")
        print("  Test endpoints: POST /test-runners/{runId}, GET /runs\n")

    server.startup = _startup_with_banner

    try:
        server.run()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
