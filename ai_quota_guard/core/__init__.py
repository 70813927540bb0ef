"""
Core modules for AI Quota Guard.

This package contains the usage accounting and admission-control engine:
plan catalog, cost calculation, rate limiting, batch admission, and the
usage event lifecycle.
"""
