# -*- coding: utf-8 -*-
"""
PVMSS Configuration - Layer 1
Process configuration read from environment variables.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from pvmss.constants import PROXMOX_DEFAULT_URL, PROXMOX_API_TIMEOUT


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class ProxmoxConfig:
    """Where Proxmox lives and how we talk to it.

    The service account is only a credential pair here; whether it may be
    used for consoles is an admin setting (console_fallback_enabled).
    """
    base_url: str = PROXMOX_DEFAULT_URL
    verify_ssl: bool = True
    timeout: int = PROXMOX_API_TIMEOUT
    service_user: Optional[str] = None
    service_password: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'ProxmoxConfig':
        base_url = os.environ.get('PROXMOX_URL', PROXMOX_DEFAULT_URL).strip().rstrip('/')
        if not base_url.startswith(('http://', 'https://')):
            logging.warning(f"PROXMOX_URL has no scheme, assuming https: {base_url}")
            base_url = f"https://{base_url}"

        try:
            timeout = int(os.environ.get('PROXMOX_TIMEOUT', PROXMOX_API_TIMEOUT))
        except ValueError:
            logging.warning("PROXMOX_TIMEOUT is not a number, using default")
            timeout = PROXMOX_API_TIMEOUT

        return cls(
            base_url=base_url,
            verify_ssl=_env_bool('PROXMOX_VERIFY_SSL', True),
            timeout=timeout,
            service_user=os.environ.get('PROXMOX_CONSOLE_USER') or None,
            service_password=os.environ.get('PROXMOX_CONSOLE_PASSWORD') or None,
        )

    @property
    def host(self) -> str:
        """host:port of the Proxmox API, as used in URLs"""
        return urlsplit(self.base_url).netloc

    @property
    def hostname(self) -> str:
        return urlsplit(self.base_url).hostname or ''

    @property
    def has_service_account(self) -> bool:
        return bool(self.service_user and self.service_password)

    def api_url(self, path: str) -> str:
        return f"{self.base_url}/api2/json/{path.lstrip('/')}"


@dataclass(frozen=True)
class ServerConfig:
    """Listener + portal level options (PVMSS_* env vars)"""
    host: Optional[str] = None
    port: int = 5000
    cors_origins: str = ''
    admin_password_hash: Optional[str] = None
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'ServerConfig':
        return cls(
            host=os.environ.get('PVMSS_HOST') or None,
            port=int(os.environ.get('PVMSS_PORT', 5000)),
            cors_origins=os.environ.get('PVMSS_CORS_ORIGINS', ''),
            admin_password_hash=os.environ.get('PVMSS_ADMIN_PASSWORD_HASH') or None,
            ssl_cert=os.environ.get('PVMSS_SSL_CERT') or None,
            ssl_key=os.environ.get('PVMSS_SSL_KEY') or None,
        )
