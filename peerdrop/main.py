import sys
import argparse

from peerdrop.bootstrap import create_container
from peerdrop.share.errors import ShareError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="peerdrop", description="peerdrop - direct peer-to-peer file sharing")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Run the session broker")
    serve_parser.add_argument("--host", help="Bind address (default from PEERDROP_HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default from PEERDROP_PORT)")

    send_parser = subparsers.add_parser("send", help="Share files")
    send_parser.add_argument("files", nargs='+', help="Files to send")
    send_parser.add_argument("--broker", help="Broker websocket URL")
    send_parser.add_argument("--password", help="Require this password to join")
    send_parser.add_argument("--max-downloads", type=int, default=None, help="Close the room after N downloads (0 = unlimited)")
    send_parser.add_argument("--expiry-hours", type=float, default=None, help="Room lifetime in hours")

    receive_parser = subparsers.add_parser("receive", help="Receive files from a room")
    receive_parser.add_argument("room", help="Room id")
    receive_parser.add_argument("--broker", help="Broker websocket URL")
    receive_parser.add_argument("--password", help="Room password (prompted if needed)")
    receive_parser.add_argument("--save-to", help="Destination folder override", default=None)

    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_parser.add_argument("key", help="Config key (broker_url, save_to, max_downloads, expiry_hours)", nargs='?')
    config_parser.add_argument("value", help="Value to set", nargs='?')
    return parser


def _do_config(args, config) -> int:
    if not args.key:
        for key, value in config.items().items():
            print(f"{key:<14} {value}")
        return 0
    try:
        if args.value is None:
            if args.key not in config.items():
                raise KeyError(f"Unknown config key: {args.key}")
            print(config.get(args.key))
        else:
            config.set(args.key, args.value)
            print(f"{args.key} = {config.get(args.key)}")
    except (KeyError, ValueError) as e:
        print(f"Error: {e.args[0] if e.args else e}")
        return 1
    return 0


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    # Initialize Application
    try:
        container = create_container()
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1
    bus = container["bus"]
    config = container["config"]

    # Init colorama for Windows ANSI support
    import colorama
    colorama.init()

    try:
        if args.command == "serve":
            from peerdrop.share.server import SignalingServer
            settings = container["settings"]
            if args.host:
                settings.host = args.host
            if args.port:
                settings.port = args.port
            server = SignalingServer(settings)
            print(f"\033[1;32m[ BROKER ]\033[0m ws://{settings.host}:{settings.port}/ws (logs: {settings.log_file})")
            server.run_server()

        elif args.command == "send":
            from peerdrop.share.cli import handle_send
            return handle_send(args, bus, config)

        elif args.command == "receive":
            from peerdrop.share.cli import handle_receive
            return handle_receive(args, bus, config)

        elif args.command == "config":
            return _do_config(args, config)

    except KeyboardInterrupt:
        print("\nStopping...")
    except ShareError as e:
        print(f"\033[1;31mError: {e}\033[0m")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
