# -*- coding: utf-8 -*-
"""input checks + masking of secrets for logs"""

import re

from pvmss.constants import NODE_NAME_PATTERN, VMID_MAX, VNC_PORT_MIN, VNC_PORT_MAX

_NODE_RE = re.compile(NODE_NAME_PATTERN)
_DIGITS_RE = re.compile(r'\A[0-9]{1,10}\Z')

# keys whose values are credentials in Proxmox payloads
_SECRET_KEYS = ('ticket', 'cookie', 'token', 'password', 'csrf')


def mask_secret(value) -> str:
    """first 4 + last 4 chars, or just the length for short values"""
    if value is None:
        return '[none]'
    value = str(value)
    if len(value) < 12:
        return f"[len:{len(value)}]"
    return f"{value[:4]}...{value[-4:]}"


def redact_payload(payload):
    """Copy of a decoded JSON payload with credential values masked"""
    if isinstance(payload, dict):
        redacted = {}
        for key, value in payload.items():
            if isinstance(value, (str, int)) and any(s in str(key).lower() for s in _SECRET_KEYS):
                redacted[key] = mask_secret(value)
            else:
                redacted[key] = redact_payload(value)
        return redacted
    if isinstance(payload, list):
        return [redact_payload(v) for v in payload]
    return payload


def is_valid_node_name(node) -> bool:
    return isinstance(node, str) and bool(_NODE_RE.match(node))


def parse_vmid(value):
    """positive int vmid or None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        vmid = value
    elif isinstance(value, str) and _DIGITS_RE.match(value.strip()):
        vmid = int(value.strip())
    else:
        return None
    if vmid <= 0 or vmid > VMID_MAX:
        return None
    return vmid


def parse_vnc_port(value):
    """VNC port in the Proxmox range or None (accepts the string form Proxmox sends)"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and _DIGITS_RE.match(value.strip()):
        port = int(value.strip())
    else:
        return None
    if port < VNC_PORT_MIN or port > VNC_PORT_MAX:
        return None
    return port
