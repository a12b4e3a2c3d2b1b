# -*- coding: utf-8 -*-
"""PVMSS core: configuration, Proxmox API client, database"""
