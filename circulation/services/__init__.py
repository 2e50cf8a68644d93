"""Library Circulation - Services Package

This package contains cross-cutting service modules:
- Read-through response cache (cache_manager.py)
"""
