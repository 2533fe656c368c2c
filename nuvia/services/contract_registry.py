"""
nuvia.services.contract_registry — Known protocol contracts
============================================================

Built once from :class:`~nuvia.config.NuviaConfig` and injected into the
award pipeline.  Contract names follow the deployment manifest:
``faucet``, ``vault<TOKEN>``, ``strategy<TOKEN>`` (e.g. ``vaultUSDC``).
Name lookups are case-insensitive; addresses are compared lowercase.
"""

from __future__ import annotations

import logging

from nuvia.config import NuviaConfig

logger = logging.getLogger(__name__)

# action type → contract kinds a transaction for it may target
ACTION_CONTRACT_KINDS: dict[str, tuple[str, ...]] = {
    "claim_faucet": ("faucet",),
    "deposit": ("vault",),
    "withdraw": ("vault",),
    "supply": ("strategy",),
}

_KINDS = ("faucet", "vault", "strategy")


class ContractRegistry:
    """Name/address lookups over the configured protocol contracts."""

    def __init__(self, contracts: dict[str, str], tokens: dict[str, str] | None = None) -> None:
        self._by_name: dict[str, str] = {
            name.lower(): addr.lower() for name, addr in contracts.items() if addr
        }
        self._tokens: dict[str, str] = {
            sym.lower(): addr.lower() for sym, addr in (tokens or {}).items() if addr
        }
        self._by_address: dict[str, str] = {
            addr: name for name, addr in self._by_name.items()
        }
        logger.info(
            "Contract registry initialised: %d contracts, %d tokens",
            len(self._by_name), len(self._tokens),
        )

    @classmethod
    def from_config(cls, cfg: NuviaConfig) -> ContractRegistry:
        return cls(cfg.contracts, cfg.tokens)

    # -- single lookups -----------------------------------------------------
    def faucet(self) -> str | None:
        return self._by_name.get("faucet")

    def vault(self, token_symbol: str) -> str | None:
        return self._by_name.get(f"vault{token_symbol}".lower())

    def strategy(self, token_symbol: str) -> str | None:
        return self._by_name.get(f"strategy{token_symbol}".lower())

    def token(self, symbol: str) -> str | None:
        return self._tokens.get(symbol.lower())

    # -- classification -------------------------------------------------------
    def is_known_contract(self, address: str | None) -> bool:
        return bool(address) and address.lower() in self._by_address

    def contract_type(self, address: str | None) -> str | None:
        """``faucet`` / ``vault`` / ``strategy`` for a known address."""
        if not address:
            return None
        name = self._by_address.get(address.lower())
        if name is None:
            return None
        for kind in _KINDS:
            if name.startswith(kind):
                return kind
        return None

    def expected_contract(self, action_type: str, token_symbol: str | None = None) -> str | None:
        """Destination a transaction for *action_type* should have targeted."""
        if action_type == "claim_faucet":
            return self.faucet()
        if action_type in ("deposit", "withdraw") and token_symbol:
            return self.vault(token_symbol)
        if action_type == "supply" and token_symbol:
            return self.strategy(token_symbol)
        return None

    def allowed_contracts(self, action_type: str) -> set[str]:
        """Every address a caller may name explicitly for *action_type*.

        Empty for actions with no contract mapping, so an explicit
        ``contractAddress`` on such an action is never accepted.
        """
        kinds = ACTION_CONTRACT_KINDS.get(action_type, ())
        return {
            addr for addr, name in self._by_address.items()
            if any(name.startswith(kind) for kind in kinds)
        }
