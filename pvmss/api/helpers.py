# -*- coding: utf-8 -*-
"""shared helpers for all api routes"""

import logging

from flask import request

from pvmss.constants import NOVNC_ASSET_ROOT
from pvmss.services import get_services

SERVER_SETTINGS_DEFAULTS = {
    # service account for consoles - off unless an admin turns it on
    'console_fallback_enabled': False,
    # also let non-admin users fall back to it
    'console_fallback_for_users': False,
    'novnc_asset_root': NOVNC_ASSET_ROOT,
}


def load_server_settings(db=None) -> dict:
    """saved settings merged over the defaults (new keys always present)"""
    db = db or get_services().db
    try:
        saved = db.get_server_settings()
    except Exception as e:
        logging.error(f"Error loading server settings from database: {e}")
        saved = {}
    return {**SERVER_SETTINGS_DEFAULTS, **saved}


def save_server_settings(settings: dict, db=None) -> bool:
    db = db or get_services().db
    try:
        db.save_server_settings(settings)
        return True
    except Exception as e:
        logging.error(f"Error saving server settings: {e}")
        return False


def get_request_data() -> dict:
    """JSON body or form fields, whichever was sent"""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def safe_error(e, default_msg='An internal error occurred'):
    """Return a safe error message for API responses.
    logs full exception but returns generic message to client.
    """
    logging.error(f"[API] {default_msg}: {e}", exc_info=True)
    return default_msg
