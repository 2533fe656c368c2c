"""
nuvia.services.chain_verifier — On-chain transaction verification
==================================================================

The award pipeline only needs one question answered: *did this
transaction succeed, and where did it go?*  :class:`TransactionVerifier`
is that boundary; :class:`JsonRpcVerifier` answers it with a single
``eth_getTransactionReceipt`` call over JSON-RPC (httpx, bounded timeout).

Outcomes are values, never exceptions.  A timeout or transport error is
``verified=False, retryable=True``; the pipeline maps that to
``verifier_unavailable`` and a resubmission of the same transaction
reopens the failed event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from nuvia.constants import DEFAULT_VERIFIER_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Boundary types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TxReceipt:
    block_number: int
    from_address: str | None
    to_address: str | None
    gas_used: str


@dataclass(frozen=True, slots=True)
class VerificationOutcome:
    verified: bool
    reason: str | None = None
    retryable: bool = False
    receipt: TxReceipt | None = None
    # Set when the mismatch points at a forged or borrowed transaction
    suspicious: bool = False


class TransactionVerifier(Protocol):
    def verify(
        self, tx_hash: str, chain_id: int, expected_contract: str | None = None
    ) -> VerificationOutcome: ...


def _hex_to_int(value: str | int | None) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def _lower(address: str | None) -> str | None:
    return address.lower() if address else None


# ---------------------------------------------------------------------------
# JSON-RPC implementation
# ---------------------------------------------------------------------------
class JsonRpcVerifier:
    """Verify receipts against per-chain JSON-RPC endpoints.

    Parameters
    ----------
    rpc_urls:
        chain id → RPC URL.  Unknown chains fail verification.
    timeout:
        Seconds for the whole request (connect + read).
    transport:
        Optional httpx transport; tests pass ``httpx.MockTransport``.
    """

    def __init__(
        self,
        rpc_urls: dict[int, str],
        *,
        timeout: float = DEFAULT_VERIFIER_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.rpc_urls = dict(rpc_urls)
        self.timeout = timeout
        self._transport = transport

    def _rpc_call(self, url: str, method: str, params: list) -> dict | None:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            resp = client.post(url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        if data.get("error"):
            raise RuntimeError(f"RPC error: {data['error']}")
        return data.get("result")

    def verify(
        self, tx_hash: str, chain_id: int, expected_contract: str | None = None
    ) -> VerificationOutcome:
        url = self.rpc_urls.get(int(chain_id))
        if not url:
            return VerificationOutcome(
                False, f"No provider configured for chain ID: {chain_id}"
            )

        try:
            receipt = self._rpc_call(url, "eth_getTransactionReceipt", [tx_hash])
            if not receipt:
                return VerificationOutcome(False, "Transaction not found or not confirmed")
            status = _hex_to_int(receipt.get("status"))
            parsed = TxReceipt(
                block_number=_hex_to_int(receipt.get("blockNumber")),
                from_address=_lower(receipt.get("from")),
                to_address=_lower(receipt.get("to")),
                gas_used=str(_hex_to_int(receipt.get("gasUsed"))),
            )
        except httpx.TimeoutException:
            logger.warning("Verifier timeout for tx %s on chain %s", tx_hash, chain_id)
            return VerificationOutcome(False, "Verifier timed out", retryable=True)
        except httpx.HTTPError as exc:
            logger.warning("Verifier transport error for tx %s: %s", tx_hash, exc)
            return VerificationOutcome(False, "Verifier unavailable", retryable=True)
        except RuntimeError as exc:
            logger.warning("Verifier returned an error for tx %s: %s", tx_hash, exc)
            return VerificationOutcome(False, str(exc))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Verifier returned an unusable receipt for tx %s: %s", tx_hash, exc)
            return VerificationOutcome(False, f"Malformed receipt: {exc}")

        if status != 1:
            return VerificationOutcome(False, "Transaction failed")

        if expected_contract and parsed.to_address != expected_contract.lower():
            return VerificationOutcome(False, "Transaction not sent to expected contract")

        logger.info(
            "Transaction verified tx=%s chain=%s block=%d to=%s",
            tx_hash, chain_id, parsed.block_number, parsed.to_address,
        )
        return VerificationOutcome(True, receipt=parsed)
