# -*- coding: utf-8 -*-
import pytest
import requests

from pvmss.core.config import ServerConfig
from pvmss.core.proxmox import ProxmoxHTTPError
from pvmss.utils.auth import SessionStore, hash_password, verify_password

from conftest import ADMIN_PASSWORD, login


class BrokenProxmoxClient:
    def __init__(self, error):
        self.error = error

    def login(self, username, password):
        raise self.error


def test_login_with_proxmox_credentials(client, services, proxmox):
    resp = client.post('/api/auth/login', json={'username': 'alice', 'password': 'alice-secret', 'realm': 'pve'})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body['user'] == {'username': 'alice@pve', 'role': 'user'}
    assert 'session_id=' in resp.headers['Set-Cookie']
    assert 'HttpOnly' in resp.headers['Set-Cookie']

    session = services.sessions.get(body['session_id'])
    assert session['pve_auth_cookie'] == 'PVE:alice@pve:COOKIE0123456789'
    assert proxmox.calls == [('login', 'alice@pve')]


def test_login_defaults_to_pam_realm(client, proxmox):
    resp = client.post('/api/auth/login', json={'username': 'bob', 'password': 'bob-secret'})
    assert resp.status_code == 200
    assert proxmox.calls == [('login', 'bob@pam')]


def test_login_wrong_password(client, db):
    resp = client.post('/api/auth/login', json={'username': 'alice@pve', 'password': 'nope'})
    assert resp.status_code == 401
    rows = db.get_audit_log(action='user.login_failed')
    assert rows[0]['user'] == 'alice@pve'


def test_login_missing_fields(client, proxmox):
    resp = client.post('/api/auth/login', json={'username': 'alice'})
    assert resp.status_code == 400
    assert proxmox.calls == []


@pytest.mark.parametrize('error,expected', [
    (requests.exceptions.ConnectionError('refused'), 503),
    (requests.exceptions.Timeout('slow'), 503),
    (ProxmoxHTTPError(500, 'Internal Server Error', 'access/ticket'), 502),
])
def test_login_when_proxmox_fails(client, services, error, expected):
    services.client_factory = lambda config, **kwargs: BrokenProxmoxClient(error)
    resp = client.post('/api/auth/login', json={'username': 'alice@pve', 'password': 'alice-secret'})
    assert resp.status_code == expected


def test_admin_login(client, services):
    resp = client.post('/api/auth/admin-login', json={'password': ADMIN_PASSWORD})
    assert resp.status_code == 200
    assert resp.get_json()['user'] == {'username': 'admin', 'role': 'admin'}


def test_admin_login_wrong_password(client, db):
    resp = client.post('/api/auth/admin-login', json={'password': 'guess'})
    assert resp.status_code == 401
    assert db.get_audit_log(action='user.login_failed')


def test_admin_login_not_configured(client, services):
    services.server_config = ServerConfig()
    resp = client.post('/api/auth/admin-login', json={'password': ADMIN_PASSWORD})
    assert resp.status_code == 403


def test_check(client):
    assert client.get('/api/auth/check').get_json() == {'authenticated': False}

    session_id, csrf = login(client)
    body = client.get('/api/auth/check').get_json()
    assert body['authenticated'] is True
    assert body['csrf_token'] == csrf
    assert body['proxmox_session'] is True


def test_session_id_header_works_without_cookie(app, client):
    session_id, _ = login(client)
    other = app.test_client()
    body = other.get('/api/auth/check', headers={'X-Session-ID': session_id}).get_json()
    assert body['authenticated'] is True


def test_logout_drops_pending_consoles(client, services, logged_in):
    session_id, csrf = logged_in
    client.post('/api/console/ticket', json={'vmid': 100, 'node': 'pve1'}, headers={'X-CSRF-Token': csrf})
    assert len(services.pending) == 1

    resp = client.post('/api/auth/logout', headers={'X-CSRF-Token': csrf})

    assert resp.status_code == 200
    assert len(services.pending) == 0
    assert services.sessions.get(session_id) is None
    assert client.get('/api/auth/check').get_json() == {'authenticated': False}


def test_logout_needs_csrf(client, services, logged_in):
    session_id, _ = logged_in
    assert client.post('/api/auth/logout').status_code == 403
    assert services.sessions.get(session_id) is not None


class TestSessionStore:

    def test_create_get_update_invalidate(self):
        store = SessionStore(timeout=60)
        sid = store.create('alice@pve', 'user', pve_auth_cookie='PVE:cookie')

        session = store.get(sid)
        assert session['user'] == 'alice@pve'
        assert session['csrf_token']

        # copies only
        session['role'] = 'admin'
        assert store.get(sid)['role'] == 'user'

        assert store.update(sid, pve_auth_cookie='PVE:new')
        assert store.get(sid)['pve_auth_cookie'] == 'PVE:new'
        assert store.invalidate(sid)
        assert store.get(sid) is None
        assert not store.update(sid, role='admin')

    def test_expired_sessions(self):
        store = SessionStore(timeout=-1)
        sid = store.create('alice@pve', 'user')
        store.create('bob@pam', 'user')

        assert store.get(sid) is None
        assert store.cleanup_expired() == 1
        assert len(store) == 0

    def test_unknown_or_empty_id(self):
        store = SessionStore()
        assert store.get(None) is None
        assert store.get('') is None
        assert store.get('nope') is None

    def test_ids_are_unique(self):
        store = SessionStore()
        ids = {store.create('alice@pve', 'user') for _ in range(50)}
        assert len(ids) == 50


def test_password_hashing(admin_password_hash):
    assert admin_password_hash.startswith('$argon2id$')
    assert verify_password(ADMIN_PASSWORD, admin_password_hash)
    assert not verify_password('wrong', admin_password_hash)
    assert not verify_password(ADMIN_PASSWORD, '')
    assert not verify_password(ADMIN_PASSWORD, 'not-a-hash')
    assert hash_password(ADMIN_PASSWORD) != admin_password_hash
