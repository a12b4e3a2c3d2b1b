# -*- coding: utf-8 -*-
"""PVMSS utilities"""
