from ledger.services import config, notify, references
from ledger.services.ledger import LedgerService, retry_on_store_error
from ledger.services.guard import AbuseGuard, GuardDecision
from ledger.services.rewards import RewardService, ReferralResult, compute_quiz_reward
from ledger.services.purchase import CartService, PurchaseService
from ledger.services.withdrawal import WithdrawalService

__all__ = [
    "config",
    "notify",
    "references",
    "LedgerService",
    "retry_on_store_error",
    "AbuseGuard",
    "GuardDecision",
    "RewardService",
    "ReferralResult",
    "compute_quiz_reward",
    "PurchaseService",
    "CartService",
    "WithdrawalService",
]
