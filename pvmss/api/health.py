# -*- coding: utf-8 -*-
"""health check - no auth, used by load balancers and docker"""

import sys

from flask import Blueprint, jsonify

from pvmss.constants import PVMSS_VERSION, PVMSS_BUILD
from pvmss.services import get_services

bp = Blueprint('health', __name__)


@bp.route('/api/health', methods=['GET'])
def health():
    services = get_services()
    return jsonify({
        'status': 'ok',
        'version': PVMSS_VERSION,
        'build': PVMSS_BUILD,
        'python_version': sys.version.split()[0],
        'active_relays': len(services.relays),
        'pending_consoles': len(services.pending) + len(services.handoff),
    })
