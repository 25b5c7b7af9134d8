#!/usr/bin/env python3
"""
Transmission RPC server for a qBittorrent engine
"""

import argparse
import os
from typing import List, Optional, Tuple

from flask import Flask, request, send_from_directory

from auth import BasicAuth, ReadOnlyPermissions
from logging_utils import get_verbosity, log_warning, set_verbosity
from qbittorrent_client import QBittorrentClient, QBittorrentSession
from settings_store import SettingsStore
from transmission_webui import TransmissionWebUI

# Configuration defaults
QBITTORRENT_URL = "http://localhost:8080"
QBITTORRENT_USERNAME = "admin"
QBITTORRENT_PASSWORD = "password"

WEB_PREFIX = '/transmission/web'


def create_app(webui: TransmissionWebUI, web_root: Optional[str] = None) -> Flask:
    """Flask application answering RPC requests through webui

    Paths the adapter does not handle fall through to Flask routing: the
    Transmission web interface from web_root, when given, and 404 for
    everything else.
    """
    app = Flask(__name__)

    @app.before_request
    def transmission_rpc():
        return webui.handle_http(request)

    if web_root:
        web_root = os.path.abspath(web_root)

        @app.route(WEB_PREFIX + '/', defaults={'path': 'index.html'})
        @app.route(WEB_PREFIX + '/<path:path>')
        def web_interface(path):
            return send_from_directory(web_root, path)

        @app.route('/')
        @app.route('/transmission/')
        @app.route(WEB_PREFIX)
        def web_index():
            return send_from_directory(web_root, 'index.html')

    return app


def user_credentials(value: str) -> Tuple[str, str]:
    """argparse type for USER:PASSWORD"""
    username, sep, password = value.partition(':')
    if not sep or not username:
        raise argparse.ArgumentTypeError(f"expected USER:PASSWORD, got '{value}'")
    return username, password


def build_auth(username: Optional[str], password: Optional[str],
               read_only_users: List[Tuple[str, str]]) -> Optional[BasicAuth]:
    """Basic auth from the command line; None leaves the server open"""
    auth = None
    if username is not None and password is not None:
        auth = BasicAuth(username, password)
    elif username is not None or password is not None:
        log_warning("[AUTH] Both --username and --password are needed, authentication disabled")

    for name, secret in read_only_users:
        if auth is None:
            auth = BasicAuth()
        auth.add_user(name, secret, ReadOnlyPermissions())
    return auth


def main():
    parser = argparse.ArgumentParser(
        description='Transmission RPC server for qBittorrent',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Verbosity levels:
  (none)  - Errors and warnings only
  -v      - Show RPC operations (client actions)
  -vv     - Show qBittorrent API calls and handler decisions
  -vvv    - Show everything (request arguments, all details)
        '''
    )
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity (-v for info, -vv for debug, -vvv for trace)')
    parser.add_argument('--host', default='0.0.0.0',
                        help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=9091,
                        help='Port to listen on (default: 9091)')
    parser.add_argument('--username', default=None,
                        help='Username for authentication (optional)')
    parser.add_argument('--password', default=None,
                        help='Password for authentication (optional)')
    parser.add_argument('--read-only-user', action='append', default=[], type=user_credentials,
                        metavar='USER:PASSWORD',
                        help='Extra user who may list torrents and read settings only (repeatable)')
    parser.add_argument('--qbittorrent-url', default=QBITTORRENT_URL,
                        help=f'qBittorrent WebUI URL (default: {QBITTORRENT_URL})')
    parser.add_argument('--qbittorrent-username', default=QBITTORRENT_USERNAME,
                        help=f'qBittorrent WebUI username (default: {QBITTORRENT_USERNAME})')
    parser.add_argument('--qbittorrent-password', default=QBITTORRENT_PASSWORD,
                        help='qBittorrent WebUI password')
    parser.add_argument('--settings-file', default=None,
                        help='File keeping the download directory and listen port across restarts')
    parser.add_argument('--web-root', default=None,
                        help='Directory with the Transmission web interface, served under /transmission/web/')

    args = parser.parse_args()

    set_verbosity(args.verbose)
    verbosity = get_verbosity()

    auth = build_auth(args.username, args.password, args.read_only_user)

    settings = SettingsStore(args.settings_file) if args.settings_file else None
    client = QBittorrentClient(args.qbittorrent_url, args.qbittorrent_username, args.qbittorrent_password)
    webui = TransmissionWebUI(QBittorrentSession(client), settings, auth)
    app = create_app(webui, args.web_root)

    print("Starting Transmission RPC server for qBittorrent")
    verbosity_names = {0: '(errors/warnings only)', 1: '(info)', 2: '(debug)', 3: '(trace)'}
    print(f"Verbosity level: {verbosity} {verbosity_names.get(verbosity, '(unknown)')}")
    print(f"Connecting to qBittorrent at: {args.qbittorrent_url}")
    if auth is None:
        print("Authentication: disabled")
    elif args.username is not None and args.password is not None:
        print(f"Authentication: enabled (user: {args.username})")
    else:
        print("Authentication: enabled")
    if args.read_only_user:
        print(f"Read-only users: {', '.join(name for name, _ in args.read_only_user)}")
    if settings is not None:
        print(f"Settings file: {settings.path}")
    if args.web_root:
        print(f"Web interface: http://{args.host}:{args.port}{WEB_PREFIX}/")
    print(f"Listening on http://{args.host}:{args.port}/transmission/rpc")
    print()

    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == '__main__':
    main()
