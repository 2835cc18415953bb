"""Wagering core: ledger, escrow, match registry, judging, settlement and clock.

Routes and socket handlers call into these modules; they never touch
balances or match status directly.
"""
