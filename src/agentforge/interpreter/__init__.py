"""Embedded interpreter service.

``service.py`` is shipped as source inside every plugin bundle and is
intentionally not imported here.
"""
