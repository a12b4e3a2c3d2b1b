# -*- coding: utf-8 -*-
"""auth routes (Proxmox login, admin login, logout, check)"""

import time
import logging

import requests
from flask import Blueprint, jsonify, request

from pvmss.constants import SESSION_COOKIE_NAME
from pvmss.core.proxmox import ProxmoxHTTPError, MalformedResponse
from pvmss.services import get_services
from pvmss.utils.auth import (
    verify_password, request_session_id, current_session, require_auth,
    ROLE_ADMIN, ROLE_USER,
)
from pvmss.utils.audit import log_audit
from pvmss.api.helpers import get_request_data

bp = Blueprint('auth', __name__)


def _session_response(session_id: str, session: dict, status: int = 200):
    services = get_services()
    response = jsonify({
        'success': True,
        'session_id': session_id,
        'csrf_token': session['csrf_token'],
        'user': {'username': session['user'], 'role': session['role']},
    })
    is_secure = request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https'
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_id,
        httponly=True,       # JS cant access this cookie
        samesite='Strict',
        secure=is_secure,
        max_age=services.sessions.timeout
    )
    return response, status


@bp.route('/api/auth/login', methods=['POST'])
def auth_login():
    """login with Proxmox credentials; the PVE cookie is kept for consoles"""
    services = get_services()
    data = get_request_data()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    realm = (data.get('realm') or 'pam').strip()

    if not username or not password:
        return jsonify({'error': 'Username and password required'}), 400

    pve_user = username if '@' in username else f"{username}@{realm}"
    client = services.client_factory(services.proxmox_config)
    try:
        login = client.login(pve_user, password)
    except ProxmoxHTTPError as e:
        if e.status_code == 401:
            logging.warning(f"[AUTH] Proxmox login failed for {pve_user}")
            log_audit(services.db, pve_user, 'user.login_failed', 'Invalid Proxmox credentials')
            return jsonify({'error': 'Invalid username or password'}), 401
        logging.error(f"[AUTH] Proxmox login error for {pve_user}: {e}")
        return jsonify({'error': 'Proxmox login failed'}), 502
    except MalformedResponse as e:
        logging.error(f"[AUTH] Unexpected login response from Proxmox: {e}")
        return jsonify({'error': 'Proxmox login failed'}), 502
    except requests.exceptions.RequestException as e:
        logging.warning(f"[AUTH] Proxmox not reachable for login: {e}")
        return jsonify({'error': 'Proxmox is not reachable'}), 503

    session_id = services.sessions.create(
        login.username, ROLE_USER,
        pve_auth_cookie=login.ticket,
        pve_csrf_token=login.csrf_token,
        pve_ticket_created=time.time(),
    )
    log_audit(services.db, login.username, 'user.login', 'Logged in with Proxmox credentials')
    return _session_response(session_id, services.sessions.get(session_id))


@bp.route('/api/auth/admin-login', methods=['POST'])
def auth_admin_login():
    """portal admin login, password checked against PVMSS_ADMIN_PASSWORD_HASH"""
    services = get_services()
    password = get_request_data().get('password') or ''
    admin_hash = services.server_config.admin_password_hash

    if not admin_hash:
        return jsonify({'error': 'Admin login is not configured'}), 403
    if not password or not verify_password(password, admin_hash):
        logging.warning(f"[AUTH] Admin login failed from {request.remote_addr}")
        log_audit(services.db, 'admin', 'user.login_failed', 'Invalid admin password')
        return jsonify({'error': 'Invalid password'}), 401

    session_id = services.sessions.create('admin', ROLE_ADMIN)
    log_audit(services.db, 'admin', 'user.login', 'Admin logged in')
    return _session_response(session_id, services.sessions.get(session_id))


@bp.route('/api/auth/logout', methods=['POST'])
@require_auth()
def auth_logout():
    """Logout user, invalidate session and any console tickets still waiting"""
    services = get_services()
    session_id = request.session_id
    services.pending.discard_visitor(session_id)
    services.handoff.discard_visitor(session_id)
    services.sessions.invalidate(session_id)

    logging.info(f"User '{request.session['user']}' logged out")
    log_audit(services.db, request.session['user'], 'user.logout', 'User logged out')

    response = jsonify({'success': True})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@bp.route('/api/auth/check', methods=['GET'])
def auth_check():
    """Check if current session is valid"""
    if not request_session_id():
        return jsonify({'authenticated': False}), 200

    _, session = current_session()
    if not session:
        return jsonify({'authenticated': False}), 200

    return jsonify({
        'authenticated': True,
        'user': {'username': session['user'], 'role': session['role']},
        'csrf_token': session['csrf_token'],
        'proxmox_session': bool(session.get('pve_auth_cookie')),
    })
