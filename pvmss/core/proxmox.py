# -*- coding: utf-8 -*-
"""
PVMSS Proxmox client - Layer 3
Thin requests wrapper for the few Proxmox endpoints the console broker needs.
Responses are decoded into typed records; anything that does not match the
expected shape raises MalformedResponse instead of defaulting.
"""

import ssl
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode, quote

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

from pvmss.constants import PROXMOX_COOKIE_NAME
from pvmss.core.config import ProxmoxConfig
from pvmss.utils.sanitization import parse_vnc_port

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class _NoHostnameCheckAdapter(HTTPAdapter):
    """verify=False alone still checks hostnames in newer urllib3 - IP-only hosts fail without this"""
    def init_poolmanager(self, *args, **kwargs):
        ctx = create_urllib3_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs['ssl_context'] = ctx
        return super().init_poolmanager(*args, **kwargs)


class ProxmoxHTTPError(Exception):
    """Proxmox answered with a non-2xx status"""

    def __init__(self, status_code: int, reason: str = '', endpoint: str = ''):
        self.status_code = status_code
        self.reason = reason
        self.endpoint = endpoint
        super().__init__(f"{endpoint}: HTTP {status_code} {reason}".strip())


class MalformedResponse(Exception):
    """Proxmox answered 2xx but the body is not what the API documents"""

    def __init__(self, message: str, payload=None):
        self.payload = payload
        super().__init__(message)


def _data_section(payload, endpoint: str) -> dict:
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        raise MalformedResponse(f"{endpoint}: missing 'data' object", payload)
    return payload['data']


def _required_str(data: dict, key: str, endpoint: str, payload) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedResponse(f"{endpoint}: '{key}' missing or not a string", payload)
    return value


@dataclass(frozen=True)
class ProxmoxLogin:
    username: str
    ticket: str
    csrf_token: str

    @classmethod
    def from_payload(cls, payload) -> 'ProxmoxLogin':
        endpoint = 'access/ticket'
        data = _data_section(payload, endpoint)
        return cls(
            username=_required_str(data, 'username', endpoint, payload),
            ticket=_required_str(data, 'ticket', endpoint, payload),
            csrf_token=_required_str(data, 'CSRFPreventionToken', endpoint, payload),
        )

    def __repr__(self):
        return f"ProxmoxLogin(username={self.username!r})"


@dataclass(frozen=True)
class VNCProxyTicket:
    ticket: str
    port: int
    user: Optional[str] = None
    upid: Optional[str] = None

    @classmethod
    def from_payload(cls, payload) -> 'VNCProxyTicket':
        endpoint = 'vncproxy'
        data = _data_section(payload, endpoint)
        ticket = _required_str(data, 'ticket', endpoint, payload)
        # port comes back as "5900" on most PVE versions, int on some
        port = parse_vnc_port(data.get('port'))
        if port is None:
            raise MalformedResponse(f"{endpoint}: 'port' missing or out of range", payload)
        user = data.get('user') if isinstance(data.get('user'), str) else None
        upid = data.get('upid') if isinstance(data.get('upid'), str) else None
        return cls(ticket=ticket, port=port, user=user, upid=upid)

    def __repr__(self):
        return f"VNCProxyTicket(port={self.port}, user={self.user!r})"


def vnc_websocket_path(node: str, vmid: int, port: int, ticket: str) -> str:
    """API path of the VNC websocket, without leading slash"""
    return (f"api2/json/nodes/{quote(node, safe='')}/qemu/{vmid}/vncwebsocket"
            f"?port={port}&vncticket={quote(ticket, safe='')}")


class ProxmoxClient:
    """One client per credential.

    Requests are issued through a fresh requests.Session each time so a client
    can be shared between threads (gevent + pooled sessions deadlocked before).
    """

    def __init__(self, config: ProxmoxConfig, auth_cookie: str = None, csrf_token: str = None):
        self.config = config
        self.auth_cookie = auth_cookie
        self.csrf_token = csrf_token

    @property
    def host(self) -> str:
        return self.config.host

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = self.config.verify_ssl
        if not self.config.verify_ssl:
            session.mount('https://', _NoHostnameCheckAdapter())
        if self.auth_cookie:
            session.cookies.set(PROXMOX_COOKIE_NAME, self.auth_cookie)
        if self.csrf_token:
            session.headers.update({'CSRFPreventionToken': self.csrf_token})
        return session

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.config.timeout)
        session = self._create_session()
        try:
            return session.request(method, self.config.api_url(path), **kwargs)
        finally:
            session.close()

    def _json(self, response: requests.Response, endpoint: str):
        if response.status_code < 200 or response.status_code >= 300:
            raise ProxmoxHTTPError(response.status_code, response.reason or '', endpoint)
        try:
            return response.json()
        except ValueError:
            raise MalformedResponse(f"{endpoint}: body is not JSON", response.text[:500])

    def login(self, username: str, password: str) -> ProxmoxLogin:
        """POST access/ticket - on success this client uses the new cookie"""
        response = self._request('POST', 'access/ticket', data={
            'username': username,
            'password': password,
        })
        login = ProxmoxLogin.from_payload(self._json(response, 'access/ticket'))
        self.auth_cookie = login.ticket
        self.csrf_token = login.csrf_token
        logging.info(f"[VNC] Proxmox login ok for {login.username} at {self.host}")
        return login

    def create_vnc_proxy(self, node: str, vmid: int) -> VNCProxyTicket:
        endpoint = f"nodes/{quote(node, safe='')}/qemu/{vmid}/vncproxy"
        logging.info(f"[VNC] Requesting ticket from {self.host} for qemu/{vmid} on {node}")
        response = self._request('POST', endpoint, data={'websocket': 1})
        return VNCProxyTicket.from_payload(self._json(response, 'vncproxy'))

    def console_page_url(self, node: str, vmid: int, port: int, ticket: str) -> str:
        query = urlencode({
            'console': 'kvm',
            'novnc': 1,
            'node': node,
            'vmid': vmid,
            'resize': 'scale',
            'path': vnc_websocket_path(node, vmid, port, ticket),
            'vncticket': ticket,
        })
        return f"{self.config.base_url}/?{query}"

    def fetch_console_page(self, node: str, vmid: int, port: int, ticket: str) -> requests.Response:
        """GET the noVNC bootstrap page; status handling is up to the caller"""
        session = self._create_session()
        try:
            return session.get(self.console_page_url(node, vmid, port, ticket),
                               timeout=self.config.timeout)
        finally:
            session.close()
