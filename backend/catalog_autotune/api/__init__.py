"""
Catalog Autotune - HTTP API
===========================
"""
