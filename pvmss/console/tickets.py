# -*- coding: utf-8 -*-
"""
VNC ticket acquisition

Works out which Proxmox credential to use for a console request and asks
Proxmox for a vncproxy ticket with it. Sources are tried in order:

    1. the Proxmox cookie stored in the portal session (user logged in with PVE creds)
    2. username/password sent with the request
    3. the service account from the environment - only when an admin enabled it

A 401 moves on to the next source, a 403 stops right away (the permission is
missing whatever credential we use).
"""

import time
import random
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from pvmss.constants import TICKET_RETRY_BACKOFF, PROXMOX_DEFAULT_REALM
from pvmss.core.config import ProxmoxConfig
from pvmss.core.proxmox import ProxmoxClient, ProxmoxHTTPError, MalformedResponse
from pvmss.console.errors import (
    ConsoleError, BadRequest, Unauthorized, AuthenticationFailed, AccessDenied,
    ServiceUnavailable, UpstreamError, InvalidUpstreamResponse,
)
from pvmss.utils.sanitization import (
    mask_secret, redact_payload, is_valid_node_name, parse_vmid,
)

SOURCE_SESSION = 'session'
SOURCE_CREDENTIALS = 'credentials'
SOURCE_SERVICE = 'service_account'

# Proxmox uses 595/596 for "node unreachable" style proxy errors
_UNAVAILABLE_STATUSES = (502, 503, 504, 595, 596)


@dataclass
class TicketRequest:
    session: Optional[dict]
    node: object
    vmid: object
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class TicketResult:
    vmid: int
    node: str
    ticket: str
    port: int
    host: str
    auth_cookie: str
    csrf_token: Optional[str]
    source: str
    fresh_login: bool = False

    def __repr__(self):
        return (f"TicketResult(vmid={self.vmid}, node={self.node!r}, port={self.port}, "
                f"host={self.host!r}, ticket={mask_secret(self.ticket)}, source={self.source})")


@dataclass
class _CredentialSource:
    name: str
    auth_cookie: Optional[str] = None
    csrf_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def needs_login(self) -> bool:
        return not self.auth_cookie


def validate_target(vmid, node):
    """(vmid, node) or BadRequest - checked before anything goes upstream"""
    parsed_vmid = parse_vmid(vmid)
    if parsed_vmid is None:
        raise BadRequest('Invalid or missing vmid')
    if not is_valid_node_name(node):
        raise BadRequest('Invalid or missing node')
    return parsed_vmid, node


def _with_realm(username: str) -> str:
    return username if '@' in username else f"{username}@{PROXMOX_DEFAULT_REALM}"


class TicketAcquirer:

    def __init__(self, config: ProxmoxConfig, settings_provider: Callable[[], dict],
                 client_factory=ProxmoxClient, audit=None,
                 retry_backoff: float = TICKET_RETRY_BACKOFF, sleep=time.sleep):
        self.config = config
        self.settings_provider = settings_provider
        self.client_factory = client_factory
        self.audit = audit
        self.retry_backoff = retry_backoff
        self.sleep = sleep

    def acquire(self, req: TicketRequest) -> TicketResult:
        vmid, node = validate_target(req.vmid, req.node)
        if not req.session or not req.session.get('user'):
            raise Unauthorized()

        user = req.session['user']
        try:
            result = self._resolve(user, req, vmid, node)
        except ConsoleError as e:
            self._record(user, vmid, node, False, e.code)
            raise
        except Exception:
            self._record(user, vmid, node, False, 'INTERNAL_ERROR')
            raise

        self._record(user, vmid, node, True, result.source)
        logging.info(f"[VNC] Ticket for {user} on VM {vmid}/{node} via {result.source}, "
                     f"port={result.port}, ticket={mask_secret(result.ticket)}")
        return result

    def _record(self, user, vmid, node, success, reason):
        if self.audit is not None:
            self.audit(user, vmid, node, success, reason)

    def _service_account_allowed(self, session: dict) -> bool:
        if not self.config.has_service_account:
            return False
        settings = self.settings_provider() or {}
        if not settings.get('console_fallback_enabled', False):
            return False
        return session.get('role') == 'admin' or bool(settings.get('console_fallback_for_users', False))

    def _credential_sources(self, req: TicketRequest) -> List[_CredentialSource]:
        session = req.session
        sources = []
        if session.get('pve_auth_cookie'):
            sources.append(_CredentialSource(
                SOURCE_SESSION,
                auth_cookie=session['pve_auth_cookie'],
                csrf_token=session.get('pve_csrf_token'),
            ))
        if req.username and req.password:
            sources.append(_CredentialSource(
                SOURCE_CREDENTIALS,
                username=_with_realm(req.username),
                password=req.password,
            ))
        if self._service_account_allowed(session):
            sources.append(_CredentialSource(
                SOURCE_SERVICE,
                username=self.config.service_user,
                password=self.config.service_password,
            ))
        return sources

    def _resolve(self, user: str, req: TicketRequest, vmid: int, node: str) -> TicketResult:
        sources = self._credential_sources(req)
        if not sources:
            logging.warning(f"[VNC] No Proxmox credentials available for {user}")
            raise AuthenticationFailed('No Proxmox credentials available. Please log in again.')

        last_error = None
        for source in sources:
            try:
                return self._with_retry(lambda: self._try_source(source, vmid, node))
            except AuthenticationFailed as e:
                logging.warning(f"[VNC] {source.name} credentials rejected for {user}, trying next source")
                last_error = e
        raise last_error

    def _with_retry(self, attempt):
        """one retry on transient errors, jittered"""
        try:
            return attempt()
        except ServiceUnavailable:
            delay = self.retry_backoff * (1 + random.random())
            logging.info(f"[VNC] Proxmox unavailable, retrying once in {delay:.2f}s")
            self.sleep(delay)
            return attempt()

    def _try_source(self, source: _CredentialSource, vmid: int, node: str) -> TicketResult:
        client = self.client_factory(self.config, auth_cookie=source.auth_cookie,
                                     csrf_token=source.csrf_token)
        try:
            if source.needs_login:
                client.login(source.username, source.password)
            proxy = client.create_vnc_proxy(node, vmid)
        except ProxmoxHTTPError as e:
            raise self._translate_status(e, source)
        except MalformedResponse as e:
            logging.error(f"[VNC] Invalid response from Proxmox ({e}): {redact_payload(e.payload)!r}")
            raise InvalidUpstreamResponse()
        except requests.exceptions.Timeout as e:
            logging.warning(f"[VNC] Timeout talking to Proxmox at {self.config.host}: {e}")
            raise ServiceUnavailable()
        except requests.exceptions.SSLError as e:
            logging.error(f"[VNC] SSL error talking to Proxmox at {self.config.host}: {e}")
            raise ServiceUnavailable('Could not establish a secure connection to Proxmox.')
        except requests.exceptions.ConnectionError as e:
            logging.warning(f"[VNC] Cannot connect to Proxmox at {self.config.host}: {e}")
            raise ServiceUnavailable()

        return TicketResult(
            vmid=vmid,
            node=node,
            ticket=proxy.ticket,
            port=proxy.port,
            host=client.host,
            auth_cookie=client.auth_cookie,
            csrf_token=client.csrf_token,
            source=source.name,
            fresh_login=source.name == SOURCE_CREDENTIALS,
        )

    def _translate_status(self, error: ProxmoxHTTPError, source: _CredentialSource) -> ConsoleError:
        status = error.status_code
        if status == 401:
            return AuthenticationFailed()
        if status == 403:
            logging.warning(f"[VNC] Proxmox denied console ({source.name}): {error}")
            return AccessDenied()
        if status in _UNAVAILABLE_STATUSES:
            logging.warning(f"[VNC] Proxmox unavailable: {error}")
            return ServiceUnavailable()
        logging.error(f"[VNC] Proxmox error: {error}")
        return UpstreamError()
