# -*- coding: utf-8 -*-
"""
PVMSS Constants - Layer 0
Static values shared by every layer. Nothing here imports from pvmss.
"""

import os

PVMSS_VERSION = "0.4.0"
PVMSS_BUILD = "2026.10"

# Paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_DIR = os.environ.get('PVMSS_CONFIG_DIR', os.path.join(BASE_DIR, 'config'))
DATABASE_FILE = os.path.join(CONFIG_DIR, 'pvmss.db')
AUDIT_KEY_FILE = os.path.join(CONFIG_DIR, '.pvmss_audit.key')
STATIC_DIR = os.path.join(BASE_DIR, 'static')

# Portal sessions (in-memory only, they carry Proxmox cookies)
SESSION_TIMEOUT = 8 * 3600
SESSION_COOKIE_NAME = 'session_id'
CSRF_HEADER_NAME = 'X-CSRF-Token'

# API rate limiting (requests per window per client IP)
API_RATE_LIMIT = int(os.environ.get('PVMSS_API_RATE_LIMIT', 300))
API_RATE_WINDOW = 60

# Audit
AUDIT_RETENTION_DAYS = 180
AUDIT_ACTION_CONSOLE = 'console.access'

# Console broker
CONSOLE_SESSION_TTL = 8           # seconds a ticket waits in the registry
VNC_PORT_MIN = 5900
VNC_PORT_MAX = 5999
VMID_MAX = 999999999
NODE_NAME_PATTERN = r'\A[A-Za-z0-9][A-Za-z0-9.-]{0,62}\Z'

TICKET_RETRY_BACKOFF = 0.5        # base delay for the single retry, jittered

RELAY_DIAL_TIMEOUT = 5
RELAY_POLL_INTERVAL = 0.5
RELAY_CLOSE_GRACE = 1.0
RELAY_CLOSE_CODE_NORMAL = 1000
RELAY_CLOSE_CODE_ERROR = 1011

NOVNC_VERSION = '1.6.0'
NOVNC_ASSET_ROOT = '/static/novnc/'

# Proxmox
PROXMOX_DEFAULT_URL = 'https://localhost:8006'
PROXMOX_API_TIMEOUT = 10
PROXMOX_COOKIE_NAME = 'PVEAuthCookie'
PROXMOX_DEFAULT_REALM = 'pam'
