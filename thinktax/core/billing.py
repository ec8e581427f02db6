"""
Billing tags for sessions.

A SessionStart hook appends ``{"session_id", "billing", "ts"}`` lines to
``billing-sessions.jsonl`` so that sessions run on a flat-rate plan can be
told apart from pay-per-token API sessions. The last tag written for a
session wins.
"""

from pathlib import Path
from typing import Dict, Optional, Union

from thinktax.storage.jsonl import iter_jsonl


class BillingRegistry:
    """Session id to billing mode lookup with a default."""

    def __init__(self, tags: Dict[str, str], default_mode: str):
        self.tags = tags
        self.default_mode = default_mode

    def __len__(self) -> int:
        return len(self.tags)

    def billing_for(self, session_id: Optional[str]) -> str:
        if session_id and session_id in self.tags:
            return self.tags[session_id]
        return self.default_mode


def load_billing_registry(path: Union[str, Path], default_mode: str) -> BillingRegistry:
    tags: Dict[str, str] = {}
    for entry in iter_jsonl(path):
        session_id = entry.get("session_id")
        billing = entry.get("billing")
        if isinstance(session_id, str) and isinstance(billing, str) and session_id and billing:
            tags[session_id] = billing
    return BillingRegistry(tags, default_mode)
