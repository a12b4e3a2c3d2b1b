# -*- coding: utf-8 -*-
"""Console access: ticket acquisition, session registry, markup rewriting, relay"""
