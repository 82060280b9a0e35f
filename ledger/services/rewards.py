import logging
from dataclasses import dataclass

from django.core.exceptions import ValidationError
from django.core.validators import validate_ipv46_address
from django.db import transaction
from django.db.models import F

from ledger.exceptions import AlreadyApplied, InvalidCode, SelfReferral
from ledger.models import LedgerEntry, ReferralApplication, Wallet
from ledger.services import config, notify, references
from ledger.services.guard import REFERRAL_APPLY, AbuseGuard
from ledger.services.ledger import LedgerService, retry_on_store_error

logger = logging.getLogger(__name__)

EntryType = LedgerEntry.EntryType


@dataclass(frozen=True)
class ReferralResult:
    created: bool
    referrer_id: int
    reward: int
    application_id: int


def normalize_referral_code(code) -> str:
    return (code or "").strip().upper()


def _storable_ip(ip_address):
    if not ip_address:
        return None
    try:
        validate_ipv46_address(ip_address)
    except ValidationError:
        return None
    return ip_address


def compute_quiz_reward(score: int, total_points: int, rewards: dict) -> int:
    """
    Coins for a quiz submission.

    Everybody gets the participation reward; scoring at least 80%, 60% or
    40% of the available points adds the first, second or third place
    bonus respectively.
    """
    coins = rewards.get("participation", 0)
    if total_points <= 0:
        return coins
    if score >= total_points * 0.8:
        coins += rewards.get("first_place", 0)
    elif score >= total_points * 0.6:
        coins += rewards.get("second_place", 0)
    elif score >= total_points * 0.4:
        coins += rewards.get("third_place", 0)
    return coins


class RewardService:
    """
    Issues coin rewards through LedgerService.

    Every reward carries a deterministic reference, so repeating a request
    (double click, client retry, retry after a crash) never pays twice.
    """

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def apply_referral(new_user_id, referral_code: str, ip_address: str = None) -> ReferralResult:
        """
        Apply a referrer's code for a user and reward both sides.

        Resubmitting the same code is an idempotent success that changes
        nothing. All writes (application row, both credits, referral count,
        rate limit attempt) commit together or not at all.

        Raises:
            Wallet.DoesNotExist: If the applicant has no wallet.
            InvalidCode: If no wallet owns the code.
            SelfReferral: If the code is the applicant's own.
            AlreadyApplied: If another code of the same referrer was applied.
            RateLimited: If the network address already applied a code recently.
        """
        code = normalize_referral_code(referral_code)
        if not code:
            raise InvalidCode("Referral code is required.")

        applicant_id = Wallet.objects.values_list("pk", flat=True).get(user_id=new_user_id)
        referrer = Wallet.objects.filter(referral_code=code).first()
        if referrer is None:
            raise InvalidCode()
        if referrer.pk == applicant_id:
            raise SelfReferral()

        # Lock both wallets in primary key order so crossing referrals cannot deadlock.
        locked = {
            wallet.pk: wallet
            for wallet in Wallet.objects.select_for_update()
            .filter(pk__in=[applicant_id, referrer.pk])
            .order_by("pk")
        }
        applicant, referrer = locked[applicant_id], locked[referrer.pk]

        existing = ReferralApplication.objects.filter(
            applicant=applicant, referrer=referrer
        ).first()
        if existing:
            if existing.code_used == code:
                logger.info(
                    "Idempotent referral request: applicant=%s referrer=%s code=%s",
                    applicant.user_id,
                    referrer.user_id,
                    code,
                )
                return ReferralResult(
                    created=False,
                    referrer_id=referrer.user_id,
                    reward=existing.reward_amount,
                    application_id=existing.pk,
                )
            raise AlreadyApplied()

        AbuseGuard.enforce(ip_address or "unknown", REFERRAL_APPLY)

        reward = config.referral_coin_reward()
        application = ReferralApplication.objects.create(
            applicant=applicant,
            referrer=referrer,
            code_used=code,
            ip_address=_storable_ip(ip_address),
            reward_amount=reward,
        )

        if reward > 0:
            LedgerService.apply_entry_once(
                applicant.user_id,
                EntryType.REFERRAL_APPLIED,
                reward,
                references.referral_applied(referrer.user_id),
                metadata={"code": code, "referrer_id": referrer.user_id},
            )
            _, created = LedgerService.apply_entry_once(
                referrer.user_id,
                EntryType.REFERRAL_BONUS,
                reward,
                references.referral_bonus(applicant.user_id),
                metadata={"code": code, "referred_user_id": applicant.user_id},
            )
            if not created:
                logger.error(
                    "Referral bonus already on the ledger, needs reconciliation: "
                    "referrer=%s applicant=%s application=%d",
                    referrer.user_id,
                    applicant.user_id,
                    application.pk,
                )

        Wallet.objects.filter(pk=referrer.pk).update(referral_count=F("referral_count") + 1)

        logger.info(
            "Referral applied: applicant=%s referrer=%s code=%s reward=%d ip=%s",
            applicant.user_id,
            referrer.user_id,
            code,
            reward,
            ip_address,
        )
        notify.emit(
            "referral.applied",
            {
                "applicant_id": applicant.user_id,
                "referrer_id": referrer.user_id,
                "code": code,
                "reward": reward,
            },
        )
        return ReferralResult(
            created=True,
            referrer_id=referrer.user_id,
            reward=reward,
            application_id=application.pk,
        )

    @staticmethod
    def apply_quiz_reward(user_id, quiz_id, amount: int):
        """
        Pay a quiz reward once per (quiz, user).

        Returns:
            (entry, created). A zero reward writes nothing and returns (None, False).
        """
        if amount < 0:
            raise ValueError("Quiz reward cannot be negative.")
        if amount == 0:
            return None, False
        return LedgerService.apply_entry_once(
            user_id,
            EntryType.QUIZ_REWARD,
            amount,
            references.quiz_reward(quiz_id, user_id),
            metadata={"quiz_id": str(quiz_id)},
        )

    @staticmethod
    def grant_admin_adjustment(user_id, amount: int, reference: str = None, admin=None):
        """
        Credit or debit a wallet on behalf of an admin.

        Scripted or batched adjustments must pass a stable `reference`; a
        one-off adjustment without one gets a fresh reference.

        Returns:
            (entry, created).
        """
        reference = reference or references.admin_adjustment()
        return LedgerService.apply_entry_once(
            user_id,
            EntryType.ADMIN_ADJUSTMENT,
            amount,
            reference,
            metadata={"admin_id": getattr(admin, "pk", None)},
        )

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def apply_fraud_penalty(user_id, amount: int, reference: str):
        """
        Deduct up to `amount` coins; a smaller balance is taken down to zero.

        Returns:
            (entry, created). Nothing is written when the balance is already zero.
        """
        if amount <= 0:
            raise ValueError("Penalty amount must be positive.")

        wallet = Wallet.objects.select_for_update().get(user_id=user_id)
        debit = min(amount, wallet.balance)
        if debit == 0:
            logger.info("Fraud penalty skipped, empty wallet: user=%s reference=%s", user_id, reference)
            return None, False

        return LedgerService.apply_entry_once(
            user_id,
            EntryType.FRAUD_PENALTY,
            -debit,
            reference,
            metadata={"requested": amount},
        )

    @staticmethod
    @transaction.atomic
    def regenerate_referral_code(user_id) -> str:
        wallet = Wallet.objects.select_for_update().get(user_id=user_id)
        wallet.referral_code = Wallet.unique_referral_code(wallet.user.get_username())
        wallet.save(update_fields=["referral_code", "updated_at"])
        logger.info("Referral code regenerated: user=%s code=%s", user_id, wallet.referral_code)
        return wallet.referral_code
