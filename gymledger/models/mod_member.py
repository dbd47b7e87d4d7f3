from pydantic import BaseModel
from typing import Dict, Optional
from datetime import datetime

class LedgerEntry(BaseModel):
    key: str
    reason: str
    requested: int                      # signed delta the caller asked for
    delta: int                          # signed delta actually applied
    remaining_sessions: int             # balance after the entry
    total_sessions: int
    applied_at: datetime

class Member(BaseModel):
    id: str
    email: Optional[str] = None
    name: str
    remaining_sessions: int = 0
    total_sessions: int = 0             # lifetime granted, not a cap
    membership: Optional[str] = None
    ledger_keys: Dict[str, LedgerEntry] = {}

    class Config:
        from_attributes = True
