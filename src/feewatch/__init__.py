"""
FeeWatch - Fee collector event scanner.

Follows an on-chain fee collector contract, tracks per-source scanning
progress, and stores every FeesCollected event exactly once.
"""

__version__ = "0.1.0"
__app_name__ = "feewatch"
