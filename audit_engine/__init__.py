"""
Stale-delegation audit engine for SPL token accounts.

Discovery → history scan → instruction classification → correlation → report.
"""
