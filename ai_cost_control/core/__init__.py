"""
Core modules for AI Cost Control.

This package contains the cache store, similarity matcher, usage ledger,
budget governor and the control-plane facade that ties them together.
"""
