"""
Nuvia — XP, Quests & Referrals Backend
=======================================
Wallet-authenticated gamification service.  Users earn experience points
(XP) for verified actions (on-chain transactions, quest completions,
referrals) recorded in an append-only ledger, and are ranked on periodic
leaderboards.

Package layout::

    nuvia/
    ├── config.py          # YAML → typed Python config (chains, contracts)
    ├── constants.py       # Shared constants (defaults, formats)
    ├── errors.py          # Domain exception hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default XP rules + quests
    ├── engine/
    │   ├── events.py      # ActionSubmission envelope + dedup keys
    │   ├── rules.py       # Pure rule / cooldown / daily-limit checks
    │   ├── periods.py     # Quest + leaderboard period boundaries
    │   ├── referral.py    # Referral state machine (pure)
    │   └── codes.py       # Unique referral-code generation
    ├── services/
    │   ├── xp_service.py        # Award engine (event → ledger → fan-out)
    │   ├── ledger_service.py    # Append-only ledger + balance projection
    │   ├── rule_service.py      # Rule store reads + quota checks
    │   ├── contract_registry.py # Known protocol contracts per action
    │   ├── chain_verifier.py    # JSON-RPC receipt verification
    │   ├── quest_service.py     # Quest progress tracker + claims
    │   ├── referral_service.py  # Referral orchestration
    │   ├── auth_service.py      # Nonce challenge / wallet signature login
    │   ├── leaderboard_service.py  # Snapshot materialisation
    │   ├── reconciliation_service.py  # Ledger vs cached balance audit
    │   └── admin_service.py     # Audit-logged admin mutations
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Wallet nonce → signature → JWT
        └── routes/        # XP, quests, referrals, leaderboard, admin
"""

__version__ = "0.1.0"
