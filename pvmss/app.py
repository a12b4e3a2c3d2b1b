# -*- coding: utf-8 -*-
"""
PVMSS Flask app factory and server startup

create_app() wires the shared state (ConsoleServices), middleware and
blueprints. main() configures logging and runs the gevent WSGI server, or
Flask's threaded server when PVMSS_NO_GEVENT is set.
"""

import os
import re
import ssl
import sys
import time
import atexit
import signal
import socket
import logging
import threading

import requests
from flask import Flask, request, jsonify, g
from flask_cors import CORS
from flask_compress import Compress

from pvmss.constants import (
    PVMSS_VERSION, API_RATE_LIMIT, API_RATE_WINDOW, CONSOLE_SESSION_TTL,
    NOVNC_VERSION, STATIC_DIR,
)
from pvmss.core.config import ProxmoxConfig, ServerConfig
from pvmss.core.db import PVMSSDB
from pvmss.core.proxmox import ProxmoxClient
from pvmss.console.registry import ConsoleSessionRegistry
from pvmss.console.relay import ActiveRelays, dial_upstream
from pvmss.console.rewriter import rewrite_asset_paths
from pvmss.console.tickets import TicketAcquirer
from pvmss.services import ConsoleServices
from pvmss.utils.auth import SessionStore
from pvmss.utils.audit import log_console_access, get_client_ip, cleanup_audit_log
from pvmss.api import register_blueprints
from pvmss.api.helpers import load_server_settings
from pvmss.api.realtime import sock

CLEANUP_INTERVAL = 60

_RATE_LIMIT_SKIP = ('/api/auth/check', '/api/health')
_MAX_REQUEST_SIZE = int(os.environ.get('PVMSS_MAX_REQUEST_SIZE', 1024 * 1024))

_BASE_CSP = (
    "default-src 'self'; "
    "script-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: blob:; "
    "connect-src 'self' wss: ws:; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)

# noVNC bootstrap page: inline runtime script, may sit in a portal iframe
_CONSOLE_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: blob:; "
    "media-src 'self' data:; "
    "connect-src 'self' wss: ws:; "
    "frame-ancestors 'self'; "
    "base-uri 'self'; "
    "form-action 'self'"
)


class RateLimiter:
    """Simple sliding window rate limiter, keyed by client IP."""

    def __init__(self, limit: int = API_RATE_LIMIT, window: int = API_RATE_WINDOW):
        self.limit = limit
        self.window = window
        self._counts = {}
        self._lock = threading.Lock()

    def allow(self, client_ip: str, now: float = None) -> bool:
        if self.limit <= 0:
            return True
        now = time.time() if now is None else now

        with self._lock:
            info = self._counts.get(client_ip)
            if info is None or now - info['window_start'] > self.window:
                self._counts[client_ip] = {'count': 1, 'window_start': now}
                return True
            if info['count'] >= self.limit:
                return False
            info['count'] += 1
            return True

    def cleanup(self, now: float = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            stale = [ip for ip, info in self._counts.items() if now - info['window_start'] > self.window]
            for ip in stale:
                del self._counts[ip]
        return len(stale)


def build_services(proxmox_config: ProxmoxConfig = None, server_config: ServerConfig = None,
                   db: PVMSSDB = None, client_factory=ProxmoxClient, dialer=dial_upstream,
                   sessions: SessionStore = None, rate_limiter: RateLimiter = None,
                   console_ttl: float = CONSOLE_SESSION_TTL, retry_backoff: float = None) -> ConsoleServices:
    proxmox_config = proxmox_config or ProxmoxConfig.from_env()
    server_config = server_config or ServerConfig.from_env()
    db = db or PVMSSDB()

    def audit_console(user, vmid, node, success, reason):
        log_console_access(db, user, vmid, node, success, reason, ip_address=get_client_ip())

    ticket_kwargs = {}
    if retry_backoff is not None:
        ticket_kwargs['retry_backoff'] = retry_backoff

    return ConsoleServices(
        db=db,
        proxmox_config=proxmox_config,
        server_config=server_config,
        sessions=sessions or SessionStore(),
        pending=ConsoleSessionRegistry('pending', ttl=console_ttl),
        handoff=ConsoleSessionRegistry('handoff', ttl=console_ttl),
        tickets=TicketAcquirer(
            proxmox_config,
            settings_provider=lambda: load_server_settings(db),
            client_factory=client_factory,
            audit=audit_console,
            **ticket_kwargs,
        ),
        relays=ActiveRelays(),
        client_factory=client_factory,
        dialer=dialer,
        rate_limiter=rate_limiter or RateLimiter(),
    )


def create_app(services: ConsoleServices = None, **service_kwargs):
    """Flask application factory.

    pass a ready ConsoleServices, or keyword args for build_services()
    """
    services = services or build_services(**service_kwargs)

    # static files go through our own route (mimetypes, quiet 404s)
    app = Flask(__name__, static_folder=None)
    app.extensions['pvmss'] = services

    origins = [o.strip() for o in services.server_config.cors_origins.split(',')
               if o.strip() and o.strip() != '*']
    if origins:
        CORS(app, supports_credentials=True, resources={
            r"/api/*": {
                "origins": origins,
                "methods": ["GET", "POST", "PUT", "OPTIONS"],
                "allow_headers": ["Content-Type", "X-CSRF-Token", "X-Session-ID"],
                "expose_headers": ["Content-Type"],
                "supports_credentials": True
            }
        })
    # else: same-origin only

    app.config['COMPRESS_MIMETYPES'] = [
        'text/html', 'text/css', 'text/plain',
        'application/json', 'application/javascript'
    ]
    app.config['COMPRESS_LEVEL'] = 6
    app.config['COMPRESS_MIN_SIZE'] = 500
    Compress(app)

    app.config['MAX_CONTENT_LENGTH'] = _MAX_REQUEST_SIZE

    # browser side of the relay; noVNC asks for the 'binary' subprotocol
    app.config['SOCK_SERVER_OPTIONS'] = {'ping_interval': 25, 'subprotocols': ['binary']}
    sock.init_app(app)

    @app.before_request
    def validate_request():
        if request.path.startswith('/static/'):
            return None

        if request.path.startswith('/api/') and not request.path.startswith(_RATE_LIMIT_SKIP):
            client_ip = get_client_ip()
            if not services.rate_limiter.allow(client_ip):
                logging.warning(f"[API] Rate limit exceeded for {client_ip}")
                return jsonify({
                    'error': 'Rate limit exceeded. Please slow down.',
                    'code': 'RATE_LIMITED',
                    'retry_after': services.rate_limiter.window
                }), 429

        if request.method in ('POST', 'PUT', 'PATCH') and request.content_length:
            content_type = request.content_type or ''
            allowed_types = ['application/json', 'multipart/form-data', 'application/x-www-form-urlencoded']
            if not any(t in content_type for t in allowed_types):
                return jsonify({'error': 'Invalid Content-Type', 'code': 'BAD_REQUEST'}), 415

        return None

    @app.after_request
    def add_security_headers(response):
        console_page = g.get('console_page', False)
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'SAMEORIGIN' if console_page else 'DENY'
        response.headers['Referrer-Policy'] = 'no-referrer' if console_page else 'strict-origin-when-cross-origin'
        response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
        response.headers['Content-Security-Policy'] = _CONSOLE_CSP if console_page else _BASE_CSP
        if console_page:
            # carries a live vncticket in its query
            response.headers['Cache-Control'] = 'no-store'

        if request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        return response

    register_blueprints(app)

    return app


def configure_logging(debug_mode: bool = False):
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s' if debug_mode else '%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not debug_mode:
        logging.getLogger('werkzeug').setLevel(logging.ERROR)
        logging.getLogger('gevent').setLevel(logging.ERROR)
        logging.getLogger('urllib3').setLevel(logging.ERROR)
        logging.getLogger('websocket').setLevel(logging.ERROR)


def _start_cleanup_thread(services: ConsoleServices, interval: int = CLEANUP_INTERVAL):
    """expired console sessions, portal sessions, rate limit buckets, old audit rows"""
    def loop():
        last_audit_cleanup = 0.0
        while True:
            time.sleep(interval)
            try:
                purged = services.pending.purge_expired() + services.handoff.purge_expired()
                if purged:
                    logging.debug(f"[CONSOLE] Purged {purged} expired console sessions")
                services.sessions.cleanup_expired()
                services.rate_limiter.cleanup()
                if time.time() - last_audit_cleanup > 24 * 3600:
                    cleanup_audit_log(services.db)
                    last_audit_cleanup = time.time()
            except Exception as e:
                logging.error(f"Cleanup thread error: {e}", exc_info=True)

    t = threading.Thread(target=loop, name='pvmss-cleanup', daemon=True)
    t.start()
    return t


_NOVNC_LISTING_URL = 'https://data.jsdelivr.com/v1/packages/npm/@novnc/novnc@{version}?structure=flat'
# what the console page loads; docs/, tests/, utils/ and snap/ stay out
_NOVNC_VENDORED_DIRS = ('app/', 'core/', 'vendor/')


def _novnc_release_files(session, version: str = NOVNC_VERSION) -> list:
    """paths of the release files the console page needs, package.json first"""
    resp = session.get(_NOVNC_LISTING_URL.format(version=version), timeout=30)
    resp.raise_for_status()
    names = [entry['name'].lstrip('/') for entry in resp.json()['files']]
    wanted = sorted(n for n in names if n.startswith(_NOVNC_VENDORED_DIRS))
    if not wanted:
        raise ValueError(f"no noVNC {version} files listed")
    return ['package.json'] + wanted


def download_static_files(dest_root: str = None) -> bool:
    """Download noVNC into static/novnc so consoles work without Proxmox serving assets."""
    dest_root = dest_root or os.path.join(STATIC_DIR, 'novnc')
    novnc_base = f'https://cdn.jsdelivr.net/npm/@novnc/novnc@{NOVNC_VERSION}'

    print("=" * 60)
    print(f"PVMSS noVNC {NOVNC_VERSION} Downloader")
    print("=" * 60)
    print()

    success = 0
    failed = 0
    session = requests.Session()
    session.headers['User-Agent'] = f'PVMSS/{PVMSS_VERSION}'

    try:
        novnc_files = _novnc_release_files(session)
    except (requests.exceptions.RequestException, ValueError, KeyError, TypeError) as e:
        print(f"  file list FAILED: {e}")
        session.close()
        return False
    print(f"  {len(novnc_files)} files in the noVNC {NOVNC_VERSION} release")

    for filepath in novnc_files:
        url = f"{novnc_base}/{filepath}"
        dest = os.path.join(dest_root, *filepath.split('/'))
        print(f"  {filepath}...", end=' ')
        try:
            resp = session.get(url, timeout=30)
            resp.raise_for_status()
            content = resp.content
            if filepath.endswith('.js'):
                text = _absolutize_imports(content.decode('utf-8'), filepath)
                if filepath.startswith('app/'):
                    # ui.js loads app/locale/ and package.json relative to the page
                    text = rewrite_asset_paths(text)
                content = text.encode('utf-8')
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            with open(dest, 'wb') as f:
                f.write(content)
            print(f"OK ({len(content):,} bytes)")
            success += 1
        except (requests.exceptions.RequestException, OSError, UnicodeDecodeError) as e:
            print(f"FAILED: {e}")
            failed += 1

    session.close()
    print()
    print("=" * 60)
    print(f"Done: {success} succeeded, {failed} failed")
    print("=" * 60)
    return failed == 0


_RELATIVE_IMPORT_RE = re.compile(r'''(\bfrom\s+|\bimport\s*\(?\s*)(['"])(\.{1,2}/[^'"]+)\2''')


def _absolutize_imports(content: str, filepath: str, url_root: str = '/static/novnc') -> str:
    """rewrite ./ and ../ module imports to absolute /static/novnc/ paths"""
    file_dir = filepath.split('/')[:-1]

    def rewrite(match):
        prefix, quote, rel_path = match.groups()
        parts = list(file_dir)
        rest = rel_path
        while rest.startswith(('./', '../')):
            if rest.startswith('../'):
                if parts:
                    parts.pop()
                rest = rest[3:]
            else:
                rest = rest[2:]
        resolved = '/'.join([url_root] + parts + [rest])
        return f"{prefix}{quote}{resolved}{quote}"

    return _RELATIVE_IMPORT_RE.sub(rewrite, content)


def _test_ipv6_available() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        s = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        try:
            s.bind(('::1', 0))
        finally:
            s.close()
        return True
    except OSError:
        return False


def _ssl_context(server_config: ServerConfig):
    if not (server_config.ssl_cert and server_config.ssl_key):
        return None
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(server_config.ssl_cert, server_config.ssl_key)
    return ctx


def _start_gevent_server(app, bind_host, port, ssl_ctx, on_shutdown):
    from gevent.pywsgi import WSGIServer

    print("Starting PVMSS with Gevent WSGIServer")
    logging.getLogger('gevent.pywsgi').setLevel(logging.CRITICAL)

    server_kwargs = {'log': None}
    if ssl_ctx:
        server_kwargs['ssl_context'] = ssl_ctx
    http_server = WSGIServer((bind_host, port), app, **server_kwargs)

    def signal_handler(signum, frame):
        print("\nShutting down gracefully...")
        on_shutdown()
        http_server.stop(timeout=2)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    http_server.serve_forever()


def main(debug_mode=False, use_gevent=True):
    """Main entry point - starts the PVMSS server."""
    configure_logging(debug_mode)

    if debug_mode:
        print("=" * 50)
        print("DEBUG MODE ENABLED")
        print("=" * 50)

    app = create_app()
    services = app.extensions['pvmss']
    proxmox = services.proxmox_config
    server = services.server_config

    print(f"PVMSS {PVMSS_VERSION} - Proxmox at {proxmox.base_url}"
          f"{'' if proxmox.verify_ssl else ' (TLS verification off)'}")
    if proxmox.has_service_account:
        print(f"Console service account configured: {proxmox.service_user}")
    if not server.admin_password_hash:
        print("Admin login disabled (set PVMSS_ADMIN_PASSWORD_HASH, see --hash-password)")

    _start_cleanup_thread(services)

    def on_shutdown():
        stopped = services.relays.stop_all('server shutdown')
        if stopped:
            print(f"Closed {stopped} console relays")

    atexit.register(on_shutdown)

    bind_host = server.host
    if not bind_host:
        bind_host = '::' if _test_ipv6_available() else '0.0.0.0'
    elif ':' in bind_host and not _test_ipv6_available():
        print(f"WARNING: IPv6 bind address '{bind_host}' requested but IPv6 not available, using 0.0.0.0")
        bind_host = '0.0.0.0'

    ssl_ctx = _ssl_context(server)
    scheme = 'https' if ssl_ctx else 'http'
    print(f"Listening on {scheme}://{bind_host}:{server.port}")
    if not ssl_ctx:
        print("WARNING: Running without HTTPS - put PVMSS behind a TLS reverse proxy")

    if use_gevent:
        _start_gevent_server(app, bind_host, server.port, ssl_ctx, on_shutdown)
        return

    print("Starting PVMSS with Flask threaded server")
    app.run(host=bind_host, port=server.port, debug=False, ssl_context=ssl_ctx, threaded=True)
