# -*- coding: utf-8 -*-
"""shared fixtures: temp database, fake Proxmox, in-memory relay endpoints"""

import queue
import threading

import pytest
from requests.structures import CaseInsensitiveDict

from pvmss.app import create_app, build_services, RateLimiter
from pvmss.core.config import ProxmoxConfig, ServerConfig
from pvmss.core.db import PVMSSDB
from pvmss.core.proxmox import ProxmoxHTTPError, ProxmoxLogin, VNCProxyTicket
from pvmss.console.relay import EndpointClosed
from pvmss.utils.auth import hash_password

PROXMOX_URL = 'https://pve.example.internal:8006'
PROXMOX_HOST = 'pve.example.internal'
VNC_TICKET = 'PVEVNC:6740A1B2::Zm9vYmFyYmF6cXV4c2VjcmV0dGlja2V0'
ADMIN_PASSWORD = 'correct horse battery'

USERS = {
    'alice@pve': 'alice-secret',
    'bob@pam': 'bob-secret',
    'svc-console@pve': 'svc-secret',
}


class FakeResponse:
    def __init__(self, status_code=200, content=b'', headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.encoding = 'utf-8'


class FakeProxmox:
    """Scriptable stand-in for a Proxmox node. Every client call is recorded."""

    def __init__(self):
        self.calls = []
        self.passwords = dict(USERS)
        # consumed one per vncproxy call before the default answer
        self.vnc_outcomes = []
        self.rejected_cookies = set()
        self.vnc_ticket = VNC_TICKET
        self.vnc_port = 5901
        self.page = FakeResponse(200, b'<html><head></head><body>noVNC</body></html>',
                                 {'Content-Type': 'text/html; charset=utf-8'})
        self.page_error = None
        self._lock = threading.Lock()

    def record(self, *call):
        with self._lock:
            self.calls.append(call)

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]

    def client_factory(self, config, auth_cookie=None, csrf_token=None):
        return FakeProxmoxClient(self, config, auth_cookie, csrf_token)


class FakeProxmoxClient:

    def __init__(self, backend, config, auth_cookie=None, csrf_token=None):
        self.backend = backend
        self.config = config
        self.auth_cookie = auth_cookie
        self.csrf_token = csrf_token

    @property
    def host(self):
        return self.config.host

    def login(self, username, password):
        self.backend.record('login', username)
        if self.backend.passwords.get(username) != password:
            raise ProxmoxHTTPError(401, 'authentication failure', 'access/ticket')
        self.auth_cookie = f"PVE:{username}:COOKIE0123456789"
        self.csrf_token = f"CSRF:{username}:0123456789"
        return ProxmoxLogin(username=username, ticket=self.auth_cookie, csrf_token=self.csrf_token)

    def create_vnc_proxy(self, node, vmid):
        self.backend.record('vncproxy', node, vmid, self.auth_cookie)
        if self.backend.vnc_outcomes:
            outcome = self.backend.vnc_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if self.auth_cookie in self.backend.rejected_cookies:
            raise ProxmoxHTTPError(401, 'invalid ticket', 'vncproxy')
        return VNCProxyTicket(ticket=self.backend.vnc_ticket, port=self.backend.vnc_port)

    def fetch_console_page(self, node, vmid, port, ticket):
        self.backend.record('page', node, vmid, port, ticket, self.auth_cookie)
        if self.backend.page_error is not None:
            raise self.backend.page_error
        return self.backend.page


_CLOSE = object()


class MemoryEndpoint:
    """In-memory relay endpoint (BrowserSocket / UpstreamSocket interface).

    feed() queues what the remote party sends, sent holds what the relay
    delivered to it.
    """

    def __init__(self, name):
        self.name = name
        self.inbox = queue.Queue()
        self.sent = []
        self.closed_with = None
        self.aborted = False
        self._closed = threading.Event()
        self._lock = threading.Lock()

    def feed(self, message):
        self.inbox.put(message)

    def hang_up(self):
        self.inbox.put(_CLOSE)

    def receive(self, timeout=None):
        if self._closed.is_set():
            raise EndpointClosed(f"{self.name} closed")
        try:
            item = self.inbox.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSE:
            raise EndpointClosed(f"{self.name} hung up")
        return item

    def send(self, message):
        if self._closed.is_set():
            raise EndpointClosed(f"{self.name} closed")
        with self._lock:
            self.sent.append(message)

    def close(self, code=1000, reason=''):
        if self.closed_with is None:
            self.closed_with = (code, reason)
        self._closed.set()
        self.inbox.put(_CLOSE)

    def abort(self):
        self.aborted = True
        self.close()

    @property
    def closed(self):
        return self._closed.is_set()


class RecordingDialer:
    """dialer for ConsoleServices: remembers the target, hands out a MemoryEndpoint"""

    def __init__(self):
        self.targets = []
        self.upstream = MemoryEndpoint('upstream')
        self.error = None

    def __call__(self, target):
        self.targets.append(target)
        if self.error is not None:
            raise self.error
        return self.upstream


@pytest.fixture(scope='session')
def admin_password_hash():
    return hash_password(ADMIN_PASSWORD)


@pytest.fixture
def db(tmp_path):
    database = PVMSSDB(db_path=str(tmp_path / 'pvmss.db'), key_file=str(tmp_path / '.audit.key'))
    yield database
    database.close()


@pytest.fixture
def proxmox():
    return FakeProxmox()


@pytest.fixture
def proxmox_config():
    return ProxmoxConfig(
        base_url=PROXMOX_URL,
        verify_ssl=False,
        service_user='svc-console@pve',
        service_password='svc-secret',
    )


@pytest.fixture
def dialer():
    return RecordingDialer()


@pytest.fixture
def services(db, proxmox, proxmox_config, dialer, admin_password_hash):
    return build_services(
        proxmox_config=proxmox_config,
        server_config=ServerConfig(admin_password_hash=admin_password_hash),
        db=db,
        client_factory=proxmox.client_factory,
        dialer=dialer,
        rate_limiter=RateLimiter(limit=0),
        retry_backoff=0,
    )


@pytest.fixture
def app(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username='alice', password='alice-secret', realm='pve'):
    """Proxmox login through the portal; returns (session_id, csrf_token)"""
    resp = client.post('/api/auth/login', json={'username': username, 'password': password, 'realm': realm})
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    return body['session_id'], body['csrf_token']


def admin_login(client):
    resp = client.post('/api/auth/admin-login', json={'password': ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    return body['session_id'], body['csrf_token']


@pytest.fixture
def logged_in(client):
    return login(client)


@pytest.fixture
def admin(client):
    return admin_login(client)
