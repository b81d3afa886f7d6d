"""
Core modules for memo-guard.

This package contains the point ledger, the reward calculators, tier
resolution, the AI token quota gate and reconciliation.
"""
