"""
nuvia.engine.events — EventSubmission envelope
===============================================

Every inbound action (HTTP request, quest claim, admin replay) is
normalised into an :class:`EventSubmission` before the award pipeline
touches it.  Metadata keys follow the client wire format (``txHash``,
``chainId``, ``tokenSymbol``, ``amount``, ``protocol``,
``contractAddress``); this module is the only place that knows them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

__all__ = ["EventSubmission", "derive_dedup_key", "tx_reference"]


@dataclass(frozen=True, slots=True)
class EventSubmission:
    """One submitted action attempt, prior to any policy check."""

    action_type: str
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None

    @property
    def tx_hash(self) -> str | None:
        value = self.metadata.get("txHash")
        if value is None or str(value).strip() == "":
            return None
        return str(value).strip()

    @property
    def raw_chain_id(self) -> Any:
        return self.metadata.get("chainId")

    @property
    def chain_id(self) -> int | None:
        """Chain id as an int; ``None`` when absent or not an integer."""
        value = self.raw_chain_id
        if value is None or isinstance(value, bool):
            return None
        try:
            if isinstance(value, str):
                text = value.strip().lower()
                return int(text, 16) if text.startswith("0x") else int(text)
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def token_symbol(self) -> str | None:
        value = self.metadata.get("tokenSymbol")
        return str(value).strip() if value else None

    @property
    def amount(self) -> Any:
        return self.metadata.get("amount")

    @property
    def protocol(self) -> str | None:
        value = self.metadata.get("protocol")
        return str(value) if value else None

    @property
    def contract_address(self) -> str | None:
        value = self.metadata.get("contractAddress")
        return str(value) if value else None

    @property
    def is_onchain(self) -> bool:
        """True when the metadata names a transaction on a chain."""
        return self.tx_hash is not None and self.raw_chain_id is not None


def tx_reference(submission: EventSubmission) -> str | None:
    """``chain:txhash`` for on-chain submissions, else ``None``."""
    if not submission.is_onchain:
        return None
    return f"{submission.chain_id or submission.raw_chain_id}:{submission.tx_hash.lower()}"


def derive_dedup_key(submission: EventSubmission) -> str:
    """Return the deduplication key for *submission*.

    Precedence: the transaction reference, then the explicit idempotency
    key, then a random key so that off-chain actions without a client key
    never collide.  A client key never replaces the transaction reference:
    one transaction is one award whatever key accompanies it.
    """
    reference = tx_reference(submission)
    if reference is not None:
        return f"tx:{reference}"
    if submission.idempotency_key:
        return submission.idempotency_key.strip()
    return f"{submission.action_type}:{uuid.uuid4().hex}"
