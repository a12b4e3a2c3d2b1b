# -*- coding: utf-8 -*-
"""PVMSS - Proxmox VM self-service portal, console broker backend"""

from pvmss.constants import PVMSS_VERSION as __version__
