import argparse

from . import create_app

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 1337


def create_parser():
    parser = argparse.ArgumentParser(description="fleetrun execution server")
    parser.add_argument('--config', default='', help='Path to config.yaml (defaults to $FLEETRUN_CONFIG_PATH)')
    parser.add_argument('--host', help='Override server.host from the config')
    parser.add_argument('--port', type=int, help='Override server.port from the config')
    parser.add_argument('--debug', action='store_true', help='Run Flask in debug mode')
    return parser


def server_settings(config, args):
    server = config.get('server', {}) or {}
    host = args.host or server.get('host') or DEFAULT_HOST
    port = args.port or int(server.get('port') or DEFAULT_PORT)
    return host, port


def main(argv=None):
    args = create_parser().parse_args(argv)
    app = create_app(config_path=args.config)
    host, port = server_settings(app.config, args)
    app.logger.info("Starting fleetrun on %s:%s", host, port)
    app.run(host=host, port=port, debug=args.debug)


if __name__ == '__main__':
    main()
