"""
Settlement Package

Applies named reward rules (task completion, ad view, daily interest,
deposit tax, admin adjustment, signup bonus) to one account, and gates
withdrawals through admission control before they debit the ledger.
"""

from .admission import WithdrawalAdmission, WithdrawalPolicy
from .engine import SettlementEngine, SettlementRule
from .policy import RewardPolicy, daily_bonus_amount, deposit_tax, draw_ad_reward

__all__ = [
    "SettlementEngine",
    "SettlementRule",
    "RewardPolicy",
    "WithdrawalAdmission",
    "WithdrawalPolicy",
    "daily_bonus_amount",
    "deposit_tax",
    "draw_ad_reward",
]
