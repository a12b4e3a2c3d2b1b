#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
PVMSS Server - Proxmox VM console broker
Version: 0.4.0

Copyright (C) 2026 PVMSS Team

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program. If not, see <https://www.gnu.org/licenses/>.

═══════════════════════════════════════════════════════════════════════════════

Hands out noVNC consoles for Proxmox VMs without exposing the Proxmox UI:
gets the VNC ticket, serves a rewritten noVNC page and relays the websocket
with the PVEAuthCookie the browser never sees.

═══════════════════════════════════════════════════════════════════════════════
"""

# gevent has to patch before anything else imports socket/threading
import os
import sys

USE_GEVENT = os.environ.get('PVMSS_NO_GEVENT', '').lower() not in ('1', 'true', 'yes')

if USE_GEVENT:
    from gevent import monkey
    monkey.patch_all()


def hash_password_interactive():
    """prompt for a password and print the argon2 hash for PVMSS_ADMIN_PASSWORD_HASH"""
    import getpass
    from pvmss.utils.auth import hash_password

    password = getpass.getpass('Admin password: ')
    if len(password) < 8:
        print("Password must be at least 8 characters")
        return False
    if password != getpass.getpass('Repeat password: '):
        print("Passwords do not match")
        return False
    print()
    print(f"PVMSS_ADMIN_PASSWORD_HASH='{hash_password(password)}'")
    return True


if __name__ == '__main__':
    if '--help' in sys.argv or '-h' in sys.argv:
        print("""
PVMSS Server

Usage:
  python pvmss_server.py [options]

Options:
  --debug            verbose logging
  --hash-password    print an argon2 hash for PVMSS_ADMIN_PASSWORD_HASH
  --download-static  download noVNC into static/novnc
  --help, -h         this message

Env vars:
  PROXMOX_URL                  Proxmox base url (default https://localhost:8006)
  PROXMOX_VERIFY_SSL           verify the Proxmox certificate (default true)
  PROXMOX_CONSOLE_USER         service account for consoles (optional)
  PROXMOX_CONSOLE_PASSWORD     its password
  PVMSS_HOST / PVMSS_PORT      listen address (default :: or 0.0.0.0, port 5000)
  PVMSS_SSL_CERT / PVMSS_SSL_KEY  serve HTTPS directly
  PVMSS_ADMIN_PASSWORD_HASH    enables admin login
  PVMSS_CORS_ORIGINS           cors origins, comma separated
  PVMSS_CONFIG_DIR             where the database lives
  PVMSS_NO_GEVENT              use the Flask threaded server
        """)
    elif '--hash-password' in sys.argv:
        sys.exit(0 if hash_password_interactive() else 1)
    elif '--download-static' in sys.argv:
        from pvmss.app import download_static_files
        sys.exit(0 if download_static_files() else 1)
    else:
        from pvmss.app import main
        main(debug_mode='--debug' in sys.argv, use_gevent=USE_GEVENT)
