"""
tests/test_chain_verifier.py — JSON-RPC Verifier & Contract Registry Tests
============================================================================
JsonRpcVerifier is driven through ``httpx.MockTransport`` so no network
is touched.
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import CHAIN_ID, FAUCET, OUTSIDER, STRATEGY_USDC, VAULT_USDC, WALLET_A
from nuvia.services.chain_verifier import JsonRpcVerifier

TX = "0x" + "ab" * 32


def _receipt(**overrides) -> dict:
    receipt = {
        "status": "0x1",
        "blockNumber": "0x10",
        "from": WALLET_A.upper().replace("0X", "0x"),
        "to": VAULT_USDC,
        "gasUsed": "0x5208",
    }
    receipt.update(overrides)
    return receipt


def _verifier(handler) -> JsonRpcVerifier:
    return JsonRpcVerifier(
        {CHAIN_ID: "https://rpc.test"}, timeout=2, transport=httpx.MockTransport(handler)
    )


def _result(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": payload})
    return handler


class TestJsonRpcVerifier:
    def test_success(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": _receipt()})

        outcome = _verifier(handler).verify(TX, CHAIN_ID, VAULT_USDC)
        assert outcome.verified
        assert outcome.receipt.block_number == 16
        assert outcome.receipt.gas_used == "21000"
        assert outcome.receipt.from_address == WALLET_A
        assert seen["method"] == "eth_getTransactionReceipt"
        assert seen["params"] == [TX]

    def test_unknown_chain(self):
        outcome = _verifier(_result(_receipt())).verify(TX, 1)
        assert not outcome.verified
        assert outcome.reason == "No provider configured for chain ID: 1"
        assert not outcome.retryable

    def test_receipt_not_found(self):
        outcome = _verifier(_result(None)).verify(TX, CHAIN_ID)
        assert outcome.reason == "Transaction not found or not confirmed"

    def test_reverted_transaction(self):
        outcome = _verifier(_result(_receipt(status="0x0"))).verify(TX, CHAIN_ID)
        assert outcome.reason == "Transaction failed"

    def test_destination_mismatch(self):
        outcome = _verifier(_result(_receipt(to=OUTSIDER))).verify(TX, CHAIN_ID, VAULT_USDC)
        assert outcome.reason == "Transaction not sent to expected contract"

    def test_expected_contract_comparison_ignores_case(self):
        outcome = _verifier(_result(_receipt(to=VAULT_USDC))).verify(
            TX, CHAIN_ID, VAULT_USDC.upper().replace("0X", "0x")
        )
        assert outcome.verified

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow node", request=request)

        outcome = _verifier(handler).verify(TX, CHAIN_ID)
        assert not outcome.verified
        assert outcome.retryable
        assert outcome.reason == "Verifier timed out"

    def test_http_error_is_retryable(self):
        outcome = _verifier(lambda request: httpx.Response(503)).verify(TX, CHAIN_ID)
        assert outcome.retryable
        assert outcome.reason == "Verifier unavailable"

    def test_rpc_error_is_final(self):
        def handler(request):
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "bad"}}
            )

        outcome = _verifier(handler).verify(TX, CHAIN_ID)
        assert not outcome.verified
        assert not outcome.retryable
        assert outcome.reason.startswith("RPC error")

    @pytest.mark.parametrize(
        "overrides",
        [{"status": "0xzz"}, {"blockNumber": "not-hex"}, {"gasUsed": 1.5}],
    )
    def test_malformed_receipt_is_a_failed_outcome(self, overrides):
        outcome = _verifier(_result(_receipt(**overrides))).verify(TX, CHAIN_ID, VAULT_USDC)
        assert not outcome.verified
        assert not outcome.retryable
        assert outcome.reason.startswith("Malformed receipt")

    def test_non_json_body(self):
        outcome = _verifier(lambda request: httpx.Response(200, text="<html>")).verify(TX, CHAIN_ID)
        assert not outcome.verified
        assert outcome.reason.startswith("Malformed receipt")


class TestContractRegistry:
    def test_expected_contract(self, registry):
        assert registry.expected_contract("claim_faucet") == FAUCET
        assert registry.expected_contract("deposit", "usdc") == VAULT_USDC
        assert registry.expected_contract("withdraw", "USDC") == VAULT_USDC
        assert registry.expected_contract("supply", "USDC") == STRATEGY_USDC
        assert registry.expected_contract("deposit") is None
        assert registry.expected_contract("swap", "USDC") is None

    def test_classification(self, registry):
        assert registry.is_known_contract(VAULT_USDC.upper().replace("0X", "0x"))
        assert not registry.is_known_contract(OUTSIDER)
        assert not registry.is_known_contract(None)
        assert registry.contract_type(FAUCET) == "faucet"
        assert registry.contract_type(STRATEGY_USDC) == "strategy"
        assert registry.contract_type(OUTSIDER) is None

    @pytest.mark.parametrize(
        "action,expected",
        [
            ("deposit", {VAULT_USDC}),
            ("claim_faucet", {FAUCET}),
            ("supply", {STRATEGY_USDC}),
            ("select_strategy", set()),
        ],
    )
    def test_allowed_contracts(self, registry, action, expected):
        assert registry.allowed_contracts(action) == expected

    def test_token_lookup(self, registry):
        assert registry.token("usdc") == "0x" + "4" * 40
        assert registry.token("DAI") is None
