# -*- coding: utf-8 -*-
"""console settings + static noVNC assets"""

import os
import logging

from flask import Blueprint, jsonify, request, Response, send_from_directory

from pvmss.constants import STATIC_DIR
from pvmss.services import get_services
from pvmss.utils.auth import require_auth, ROLE_ADMIN
from pvmss.utils.audit import log_audit
from pvmss.api.helpers import (
    load_server_settings, save_server_settings, get_request_data, SERVER_SETTINGS_DEFAULTS,
)

bp = Blueprint('settings', __name__)

_BOOL_SETTINGS = ('console_fallback_enabled', 'console_fallback_for_users')


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('1', 'true', 'yes', 'on'):
        return True
    if isinstance(value, str) and value.strip().lower() in ('0', 'false', 'no', 'off', ''):
        return False
    if isinstance(value, int):
        return bool(value)
    raise ValueError('expected a boolean')


def _normalize_asset_root(value) -> str:
    """asset root must be a same-origin absolute path, always with trailing slash"""
    if not isinstance(value, str):
        raise ValueError('expected a path')
    value = value.strip()
    if not value.startswith('/') or value.startswith('//') or '..' in value:
        raise ValueError('must be an absolute path on this server')
    if any(c in value for c in '"\'<>\\ '):
        raise ValueError('contains invalid characters')
    return value if value.endswith('/') else value + '/'


@bp.route('/api/settings/console', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_console_settings():
    settings = load_server_settings(get_services().db)
    return jsonify({k: settings[k] for k in SERVER_SETTINGS_DEFAULTS})


@bp.route('/api/settings/console', methods=['PUT'])
@require_auth(roles=[ROLE_ADMIN])
def update_console_settings():
    """Update console settings (admin only). Unknown keys are rejected."""
    services = get_services()
    data = get_request_data()

    unknown = sorted(set(data) - set(SERVER_SETTINGS_DEFAULTS))
    if unknown:
        return jsonify({'error': f"Unknown setting(s): {', '.join(unknown)}"}), 400

    changes = {}
    try:
        for key in _BOOL_SETTINGS:
            if key in data:
                changes[key] = _parse_bool(data[key])
        if 'novnc_asset_root' in data:
            changes['novnc_asset_root'] = _normalize_asset_root(data['novnc_asset_root'])
    except ValueError as e:
        return jsonify({'error': f"Invalid value: {e}"}), 400

    if changes and not save_server_settings(changes, services.db):
        return jsonify({'error': 'Failed to save settings'}), 500

    if changes:
        summary = ', '.join(f"{k}={v}" for k, v in sorted(changes.items()))
        log_audit(services.db, request.session['user'], 'settings.console_updated', summary)

    settings = load_server_settings(services.db)
    return jsonify({'success': True, **{k: settings[k] for k in SERVER_SETTINGS_DEFAULTS}})


# noVNC assets fetched by --download-static
_MIME_TYPES = {
    '.js': 'application/javascript',
    '.mjs': 'application/javascript',
    '.css': 'text/css',
    '.html': 'text/html',
    '.json': 'application/json',
    '.svg': 'image/svg+xml',
    '.png': 'image/png',
    '.ico': 'image/x-icon',
    '.woff': 'font/woff',
    '.woff2': 'font/woff2',
    '.ttf': 'font/ttf',
    '.ogg': 'audio/ogg',
    '.mp3': 'audio/mpeg',
}


@bp.route('/static/<path:filename>')
def serve_static(filename):
    """static files; 404s keep the expected mimetype so module loads fail cleanly"""
    ext = os.path.splitext(filename)[1].lower()
    mimetype = _MIME_TYPES.get(ext, 'application/octet-stream')

    filepath = os.path.join(STATIC_DIR, filename)
    if not os.path.isfile(filepath):
        logging.debug(f"[API] Static file not found: {filename}")
        return Response('', status=404, mimetype=mimetype)

    # send_from_directory refuses paths that escape STATIC_DIR
    return send_from_directory(STATIC_DIR, filename, mimetype=mimetype)
