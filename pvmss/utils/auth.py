# -*- coding: utf-8 -*-
"""
PVMSS Authentication - Layer 4
Password hashing, portal sessions, CSRF tokens, require_auth decorator.

Portal sessions hold the user's Proxmox cookie, so they live in memory only
and die with the process.
"""

import os
import time
import base64
import hmac
import logging
import secrets
import threading
from functools import wraps
from typing import Optional, Tuple

import argon2
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHashError
from flask import request, jsonify

from pvmss.constants import SESSION_TIMEOUT, SESSION_COOKIE_NAME, CSRF_HEADER_NAME
from pvmss.services import get_services

ROLE_ADMIN = 'admin'
ROLE_USER = 'user'

_password_hasher = PasswordHasher(
    time_cost=3,
    memory_cost=65536,  # 64mb
    parallelism=4,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID
)


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password: str, hash_string: str) -> bool:
    if not hash_string:
        return False
    try:
        return _password_hasher.verify(hash_string, password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError) as e:
        logging.error(f"argon2 error: {e}")
        return False


def generate_session_id() -> str:
    """Generate a secure session ID"""
    return base64.urlsafe_b64encode(os.urandom(32)).decode('utf-8')


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


class SessionStore:
    """In-memory portal sessions, keyed by session id.

    get() hands out copies; changes go through update() so the lock covers them.
    """

    def __init__(self, timeout: int = SESSION_TIMEOUT):
        self.timeout = timeout
        self._sessions = {}
        self._lock = threading.Lock()

    def create(self, username: str, role: str, **extra) -> str:
        session_id = generate_session_id()
        now = time.time()
        with self._lock:
            self._sessions[session_id] = {
                'user': username,
                'role': role,
                'csrf_token': generate_csrf_token(),
                'created_at': now,
                'last_activity': now,
                **extra,
            }
        logging.debug(f"[AUTH] Session created for {username} ({role})")
        return session_id

    def get(self, session_id: str) -> Optional[dict]:
        """session copy if valid (touches last_activity), else None"""
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if time.time() - session['last_activity'] > self.timeout:
                del self._sessions[session_id]
                logging.debug(f"[AUTH] Session expired for {session['user']}")
                return None
            session['last_activity'] = time.time()
            return dict(session)

    def update(self, session_id: str, **fields) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.update(fields)
            return True

    def invalidate(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        current_time = time.time()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items()
                       if current_time - s.get('last_activity', 0) > self.timeout]
            for sid in expired:
                self._sessions.pop(sid, None)
        if expired:
            logging.debug(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._sessions)


def request_session_id() -> Optional[str]:
    """session id from X-Session-ID header or the session cookie"""
    return request.headers.get('X-Session-ID') or request.cookies.get(SESSION_COOKIE_NAME)


def current_session() -> Tuple[Optional[str], Optional[dict]]:
    session_id = request_session_id()
    session = get_services().sessions.get(session_id)
    if session is None:
        return None, None
    return session_id, session


def check_csrf(session: dict) -> bool:
    sent = request.headers.get(CSRF_HEADER_NAME, '')
    expected = session.get('csrf_token', '')
    return bool(sent) and bool(expected) and hmac.compare_digest(sent, expected)


def require_auth(roles: list = None):
    """auth decorator for protected routes

    sets request.session / request.session_id; unsafe methods also need the
    session's CSRF token in the X-CSRF-Token header
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            session_id, session = current_session()
            if not session:
                return jsonify({'error': 'Unauthorized', 'code': 'AUTH_REQUIRED'}), 401

            if roles and session['role'] not in roles:
                logging.warning(f"[AUTH] {session['user']} denied {request.path} (role {session['role']})")
                return jsonify({'error': 'Forbidden', 'code': 'INSUFFICIENT_PERMISSIONS'}), 403

            if request.method in ('POST', 'PUT', 'PATCH', 'DELETE') and not check_csrf(session):
                logging.warning(f"[AUTH] CSRF check failed for {session['user']} on {request.path}")
                return jsonify({'error': 'Invalid CSRF token', 'code': 'CSRF_INVALID'}), 403

            request.session = session
            request.session_id = session_id
            return f(*args, **kwargs)
        return decorated_function
    return decorator
