from __future__ import annotations

from typing import NewType

# Issued by the hosted auth provider (the JWT ``sub`` claim)
UserId = NewType("UserId", str)
RequestId = NewType("RequestId", str)
LedgerEntryId = NewType("LedgerEntryId", int)
PackId = NewType("PackId", str)
StripeEventId = NewType("StripeEventId", str)
