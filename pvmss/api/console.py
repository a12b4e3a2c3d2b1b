# -*- coding: utf-8 -*-
"""console routes: ticket request, rewritten noVNC page, websocket relay"""

import hmac
import html
import time
import logging

import requests
from flask import Blueprint, Response, jsonify, request, g, url_for

from pvmss.constants import NOVNC_ASSET_ROOT, AUDIT_ACTION_CONSOLE
from pvmss.services import get_services
from pvmss.console.errors import ConsoleError, BadRequest, SessionExpired
from pvmss.console.registry import ConsoleSession, SessionKey
from pvmss.console.tickets import TicketRequest, validate_target
from pvmss.console.relay import BrowserSocket, ConsoleRelay, UpstreamTarget
from pvmss.console.rewriter import ConsoleMarkupRewriter, RelayTarget
from pvmss.utils.auth import require_auth, current_session, ROLE_ADMIN
from pvmss.utils.sanitization import parse_vnc_port, mask_secret
from pvmss.api.helpers import get_request_data, load_server_settings, safe_error
from pvmss.api.realtime import sock

bp = Blueprint('console', __name__)

CONSOLE_WEBSOCKET_PATH = '/console/websocket'

_ERROR_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Console unavailable</title></head>
<body style="font-family: sans-serif; padding: 2rem;">
<h2>Console unavailable</h2>
<p>{message}</p>
</body></html>
"""


def _error_page(status: int, message: str):
    body = _ERROR_PAGE.format(message=html.escape(message))
    return Response(body, status=status, mimetype='text/html')


def _plain_error(status: int, message: str):
    return Response(message, status=status, mimetype='text/plain')


def _is_secure_request() -> bool:
    return request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https'


# ============================================================================
# Ticket
# ============================================================================

@bp.route('/api/console/ticket', methods=['POST'])
@require_auth()
def request_console_ticket():
    """get a VNC ticket and park it for the console page"""
    services = get_services()
    data = get_request_data()

    ticket_request = TicketRequest(
        session=request.session,
        node=data.get('node'),
        vmid=data.get('vmid'),
        username=data.get('username') or None,
        password=data.get('password') or None,
    )

    try:
        result = services.tickets.acquire(ticket_request)
    except ConsoleError as e:
        if isinstance(e, BadRequest):
            logging.info(f"[CONSOLE] Rejected ticket request from {request.session['user']}: {e.message}")
        return jsonify(e.to_dict()), e.status
    except Exception as e:
        return jsonify({
            'success': False,
            'error': safe_error(e, 'Failed to request console ticket'),
            'code': 'INTERNAL_ERROR',
        }), 500

    if result.fresh_login:
        # keep the new PVE cookie so the next console skips the password
        services.sessions.update(
            request.session_id,
            pve_auth_cookie=result.auth_cookie,
            pve_csrf_token=result.csrf_token,
            pve_ticket_created=time.time(),
        )

    console_session = ConsoleSession.issue(
        vmid=result.vmid,
        node=result.node,
        proxmox_host=result.host,
        port=result.port,
        ticket=result.ticket,
        auth_cookie=result.auth_cookie,
        csrf_token=result.csrf_token,
        username=request.session['user'],
        source=result.source,
        ttl=services.pending.ttl,
    )
    services.pending.put(SessionKey(request.session_id, result.vmid, result.node), console_session)

    return jsonify({
        'success': True,
        'ticket': result.ticket,
        'port': result.port,
        'vmid': result.vmid,
        'node': result.node,
        'console_url': url_for('console.console_page', vmid=result.vmid, node=result.node),
    })


# ============================================================================
# Console page (rewritten noVNC bootstrap)
# ============================================================================

@bp.route('/console', methods=['GET'])
def console_page():
    services = get_services()
    session_id, session = current_session()
    if not session:
        return _error_page(401, 'Please log in to open a console.')

    try:
        vmid, node = validate_target(request.args.get('vmid'), request.args.get('node'))
    except BadRequest as e:
        logging.info(f"[CONSOLE] Bad console page request from {session['user']}: {e.message}")
        return _error_page(400, e.message)

    key = SessionKey(session_id, vmid, node)
    console_session = services.pending.take_if_valid(key)
    if console_session is None:
        logging.info(f"[CONSOLE] No pending console for {session['user']} on VM {vmid}/{node}")
        return _error_page(SessionExpired.status, SessionExpired.default_message)

    client = services.client_factory(
        services.proxmox_config,
        auth_cookie=console_session.auth_cookie,
        csrf_token=console_session.csrf_token,
    )
    try:
        upstream = client.fetch_console_page(node, vmid, console_session.port, console_session.ticket)
    except requests.exceptions.RequestException as e:
        logging.warning(f"[CONSOLE] Proxmox unreachable for console page VM {vmid}/{node}: {e}")
        return _error_page(502, 'Proxmox is not reachable. Please try again.')

    if upstream.status_code != 200:
        logging.warning(f"[CONSOLE] Proxmox returned {upstream.status_code} for console page VM {vmid}/{node}")
        status = upstream.status_code if 400 <= upstream.status_code <= 599 else 502
        return _error_page(status, 'Proxmox could not serve the console page.')

    try:
        settings = load_server_settings(services.db)
        rewriter = ConsoleMarkupRewriter(
            services.proxmox_config.base_url,
            relay_path=CONSOLE_WEBSOCKET_PATH,
            asset_root=settings.get('novnc_asset_root') or NOVNC_ASSET_ROOT,
            portal_host=request.host,
            portal_secure=_is_secure_request(),
        )
        page = rewriter.render(
            upstream.content,
            upstream.headers.items(),
            RelayTarget(vmid, node, console_session.port, console_session.ticket),
        )
    except Exception as e:
        return _error_page(500, safe_error(e, 'Failed to prepare the console page'))

    # relay gets its own holding window, the page load may have eaten most of ours
    services.handoff.put(key, console_session.renewed(services.handoff.ttl))

    g.console_page = True
    return Response(page.body, status=200, headers=page.headers)


# ============================================================================
# WebSocket relay
# ============================================================================

@bp.before_request
def check_console_websocket():
    """everything the relay needs is checked here, before flask-sock upgrades"""
    if request.endpoint != 'console.console_websocket':
        return None

    try:
        args = request.args
        vmid, node = validate_target(args.get('vmid'), args.get('node'))
        port = parse_vnc_port(args.get('port'))
        if port is None:
            raise BadRequest('Invalid or missing port')
        vncticket = args.get('vncticket') or ''
        if not vncticket:
            raise BadRequest('Missing vncticket')
    except BadRequest as e:
        logging.info(f"[RELAY] Rejected websocket request: {e.message}")
        return _plain_error(400, e.message)

    try:
        services = get_services()
        session_id, session = current_session()
        if not session:
            return _plain_error(401, 'Not logged in')

        key = SessionKey(session_id, vmid, node)
        console_session = services.handoff.take_if_valid(key) or services.pending.take_if_valid(key)
        if (console_session is None or console_session.port != port
                or not hmac.compare_digest(console_session.ticket, vncticket)):
            logging.warning(f"[RELAY] No valid console session for {session['user']} on VM {vmid}/{node} "
                            f"(ticket {mask_secret(vncticket)})")
            return _plain_error(401, SessionExpired.default_message)

        g.console_session = console_session
    except Exception as e:
        return _plain_error(500, safe_error(e, 'Console relay setup failed'))
    return None


def relay_console(ws, cs: ConsoleSession, services) -> ConsoleRelay:
    """dial Proxmox for an accepted browser socket and relay until either side closes"""
    config = services.proxmox_config
    target = UpstreamTarget.for_console(
        config.base_url, cs.node, cs.vmid, cs.port, cs.ticket, cs.auth_cookie,
        verify_ssl=config.verify_ssl,
    )
    relay = ConsoleRelay(BrowserSocket(ws), label=f"{cs.vmid}@{cs.node}")
    logging.info(f"[RELAY] {cs.username} opening console for VM {cs.vmid} on {cs.node}: {target!r}")

    with services.relays.track(relay):
        relay.serve(lambda: services.dialer(target))
    return relay


@sock.route(CONSOLE_WEBSOCKET_PATH, bp=bp)
def console_websocket(ws):
    relay_console(ws, g.console_session, get_services())


# ============================================================================
# Audit
# ============================================================================

@bp.route('/api/console/audit', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def console_audit_log():
    services = get_services()
    try:
        limit = min(int(request.args.get('limit', 100)), 1000)
    except ValueError:
        return jsonify({'error': 'limit must be a number'}), 400

    entries = services.db.get_audit_log(
        limit=limit,
        user=request.args.get('user') or None,
        action=AUDIT_ACTION_CONSOLE,
        verify_integrity=True,
    )
    return jsonify({'entries': entries})
