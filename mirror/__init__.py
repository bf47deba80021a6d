"""mirror: an off-chain projection of on-chain domain registries.

The chain is the ledger. This package keeps a faithful, queryable copy of it:
fetch events, store them once, fold them into domain state, remember where
we stopped.
"""

from __future__ import annotations

__all__ = ["__version__", "NULL_ADDRESS"]

__version__ = "1.0.0"

# The address nobody owns. Mints come from it, burns go to it.
NULL_ADDRESS = "0x0000000000000000000000000000000000000000"
