import threading
import unittest
from datetime import timedelta
from io import StringIO
from unittest.mock import MagicMock, patch

import requests
from celery.exceptions import Retry
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.exceptions import PermissionDenied
from django.core.management import call_command
from django.db import IntegrityError, OperationalError, connection, transaction
from django.test import RequestFactory, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from ledger.exceptions import (
    AlreadyApplied,
    AlreadyProcessed,
    DuplicateReference,
    InsufficientFunds,
    InvalidCode,
    ItemUnavailable,
    OutOfStock,
    RateLimited,
    SelfReferral,
    StoreUnavailable,
)
from ledger.models import (
    CartItem,
    LedgerEntry,
    Order,
    RateLimitBucket,
    ReferralApplication,
    Setting,
    StoreItem,
    Wallet,
    Withdrawal,
)
from ledger.models.wallet import generate_referral_code
from ledger.services import (
    AbuseGuard,
    CartService,
    LedgerService,
    PurchaseService,
    RewardService,
    WithdrawalService,
    compute_quiz_reward,
    config,
    retry_on_store_error,
)
from ledger.services.guard import PASSWORD_RESET, REFERRAL_APPLY, VOTE, vote_actor_key
from ledger.tasks import (
    publish_ledger_event,
    purge_expired_rate_limits,
    reconcile_wallet_balances,
)
from ledger.utils import client_ip, post_audit_event

User = get_user_model()
EntryType = LedgerEntry.EntryType


def make_user(username, **extra):
    """Create a user; the wallet is created by the post_save signal."""
    return User.objects.create_user(username=username, password="secret-pass", **extra)


def fund(user, amount, reference=None):
    """Credit `amount` coins through the ledger so balances stay reconcilable."""
    return LedgerService.apply_entry(
        user.pk,
        LedgerEntry.EntryType.ADMIN_ADJUSTMENT,
        amount,
        reference or f"seed_{user.pk}_{amount}",
    )


def make_item(name="Sticker pack", coin_cost=10, inventory=None, **extra):
    return StoreItem.objects.create(
        name=name, coin_cost=coin_cost, inventory=inventory, **extra
    )


# ============================================================
# Wallet
# ============================================================


class WalletModelTest(TestCase):
    def test_wallet_created_with_user(self):
        user = make_user("alice")

        wallet = Wallet.objects.get(user=user)
        self.assertEqual(wallet.balance, 0)
        self.assertEqual(wallet.referral_count, 0)
        self.assertIsNotNone(wallet.uuid)

    def test_referral_code_format(self):
        user = make_user("alice")

        code = user.wallet.referral_code
        self.assertTrue(code.startswith("ALI"))
        self.assertEqual(len(code), 7)

    def test_referral_code_fallback_prefix(self):
        code = generate_referral_code("__")
        self.assertTrue(code.startswith("USR"))

    def test_referral_codes_are_unique(self):
        codes = {make_user(f"bob{i}").wallet.referral_code for i in range(5)}
        self.assertEqual(len(codes), 5)

    def test_wallet_str(self):
        user = make_user("alice")
        self.assertIn(str(user.wallet.uuid), str(user.wallet))

    def test_negative_balance_rejected_by_database(self):
        user = make_user("alice")

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Wallet.objects.filter(pk=user.wallet.pk).update(balance=-1)


# ============================================================
# LedgerEntry
# ============================================================


class LedgerEntryModelTest(TestCase):
    def setUp(self):
        self.user = make_user("alice")

    def test_reference_unique_per_wallet_and_type(self):
        fund(self.user, 10, reference="ref-1")

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                LedgerEntry.objects.create(
                    wallet=self.user.wallet,
                    entry_type=LedgerEntry.EntryType.ADMIN_ADJUSTMENT,
                    amount=5,
                    reference="ref-1",
                    balance_after=15,
                )

    def test_same_reference_allowed_for_other_type(self):
        fund(self.user, 10, reference="ref-1")

        entry = LedgerEntry.objects.create(
            wallet=self.user.wallet,
            entry_type=LedgerEntry.EntryType.QUIZ_REWARD,
            amount=5,
            reference="ref-1",
            balance_after=15,
        )
        self.assertTrue(entry.is_credit)

    def test_zero_amount_rejected_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                LedgerEntry.objects.create(
                    wallet=self.user.wallet,
                    entry_type=LedgerEntry.EntryType.ADMIN_ADJUSTMENT,
                    amount=0,
                    reference="zero",
                    balance_after=0,
                )

    def test_entry_str(self):
        entry = fund(self.user, 25, reference="ref-str")
        self.assertIn("+25", str(entry))
        self.assertIn("ref-str", str(entry))


# ============================================================
# Referral / store
# ============================================================


class ReferralApplicationModelTest(TestCase):
    def test_self_referral_rejected_by_database(self):
        wallet = make_user("alice").wallet

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ReferralApplication.objects.create(
                    applicant=wallet, referrer=wallet, code_used=wallet.referral_code
                )


class StoreItemModelTest(TestCase):
    def test_revealed_payload_for_redeem_code(self):
        item = make_item(
            category=StoreItem.Category.REDEEM_CODE,
            redeem_code="GIFT-123",
            reward_details="ignored",
        )
        self.assertEqual(
            item.revealed_payload(), {"redeem_code": "GIFT-123", "reward_details": ""}
        )

    def test_revealed_payload_for_digital_reward(self):
        item = make_item(
            category=StoreItem.Category.DIGITAL_REWARD, reward_details="Download link"
        )
        self.assertEqual(
            item.revealed_payload(), {"redeem_code": "", "reward_details": "Download link"}
        )

    def test_physical_item_reveals_nothing(self):
        item = make_item(category=StoreItem.Category.PHYSICAL, redeem_code="SECRET")
        self.assertEqual(item.revealed_payload(), {"redeem_code": "", "reward_details": ""})

    def test_negative_inventory_rejected_by_database(self):
        item = make_item(inventory=1)

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StoreItem.objects.filter(pk=item.pk).update(inventory=-1)


# ============================================================
# Ledger Store
# ============================================================


class LedgerServiceTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("alice")

    def test_credit(self):
        entry = LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 40, "quiz_1")

        self.assertEqual(entry.amount, 40)
        self.assertEqual(entry.balance_after, 40)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 40)

    def test_debit(self):
        fund(self.user, 100)
        entry = LedgerService.apply_entry(self.user.pk, EntryType.FRAUD_PENALTY, -30, "fraud_1")

        self.assertEqual(entry.balance_after, 70)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 70)

    def test_debit_below_zero_raises_and_writes_nothing(self):
        fund(self.user, 20)

        with self.assertRaises(InsufficientFunds) as ctx:
            LedgerService.apply_entry(self.user.pk, EntryType.ADMIN_ADJUSTMENT, -21, "adj_1")

        self.assertEqual(ctx.exception.balance, 20)
        self.assertEqual(ctx.exception.required, 21)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 20)
        self.assertFalse(LedgerEntry.objects.filter(reference="adj_1").exists())

    def test_debit_of_entire_balance(self):
        fund(self.user, 20)
        LedgerService.apply_entry(self.user.pk, EntryType.ADMIN_ADJUSTMENT, -20, "adj_all")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 0)

    def test_zero_amount_raises(self):
        with self.assertRaises(ValueError):
            LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 0, "quiz_0")

    def test_non_integer_amount_raises(self):
        with self.assertRaises(ValueError):
            LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 1.5, "quiz_f")
        with self.assertRaises(ValueError):
            LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, True, "quiz_b")

    def test_empty_reference_raises(self):
        with self.assertRaises(ValueError):
            LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 5, "")

    def test_unknown_user_raises(self):
        with self.assertRaises(Wallet.DoesNotExist):
            LedgerService.apply_entry(999999, EntryType.QUIZ_REWARD, 5, "quiz_x")

    def test_duplicate_reference_raises_with_stored_entry(self):
        first = LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_1_1")

        with self.assertRaises(DuplicateReference) as ctx:
            LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_1_1")

        self.assertEqual(ctx.exception.entry.pk, first.pk)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 5)

    def test_apply_entry_once_is_idempotent(self):
        entry1, created1 = LedgerService.apply_entry_once(
            self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_2_1"
        )
        entry2, created2 = LedgerService.apply_entry_once(
            self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_2_1"
        )

        self.assertTrue(created1)
        self.assertFalse(created2)
        self.assertEqual(entry1.pk, entry2.pk)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 5)
        self.assertEqual(LedgerEntry.objects.filter(wallet__user=self.user).count(), 1)

    def test_history_newest_first_and_filtered(self):
        fund(self.user, 100)
        LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_3_1")
        LedgerService.apply_entry(self.user.pk, EntryType.FRAUD_PENALTY, -10, "fraud_3")

        history = list(LedgerService.history(self.user.pk))
        self.assertEqual([e.reference for e in history], ["fraud_3", "quiz_3_1", f"seed_{self.user.pk}_100"])

        quiz_only = LedgerService.history(self.user.pk, entry_type=EntryType.QUIZ_REWARD)
        self.assertEqual(quiz_only.count(), 1)

    def test_balance_equals_sum_of_entries(self):
        fund(self.user, 100)
        LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 7, "quiz_4_1")
        LedgerService.apply_entry(self.user.pk, EntryType.FRAUD_PENALTY, -33, "fraud_4")
        LedgerService.apply_entry_once(self.user.pk, EntryType.QUIZ_REWARD, 7, "quiz_4_1")

        wallet = LedgerService.get_wallet(self.user.pk)
        self.assertEqual(wallet.balance, 74)
        self.assertEqual(LedgerService.ledger_sum(wallet), wallet.balance)
        self.assertFalse(LedgerService.find_drift().exists())

    def test_balance_after_tracks_running_total(self):
        amounts = [50, -20, 15, -45]
        for i, amount in enumerate(amounts):
            if amount > 0:
                LedgerService.apply_entry(self.user.pk, EntryType.ADMIN_ADJUSTMENT, amount, f"run_{i}")
            else:
                LedgerService.apply_entry(self.user.pk, EntryType.FRAUD_PENALTY, amount, f"run_{i}")

        running = 0
        for entry in LedgerEntry.objects.filter(wallet__user=self.user).order_by("id"):
            running += entry.amount
            self.assertEqual(entry.balance_after, running)
            self.assertGreaterEqual(entry.balance_after, 0)

    def test_apply_entry_inside_failed_unit_rolls_back(self):
        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                LedgerService.apply_entry(self.user.pk, EntryType.QUIZ_REWARD, 5, "quiz_rb")
                raise RuntimeError("caller failed")

        self.assertEqual(LedgerService.get_balance(self.user.pk), 0)
        self.assertFalse(LedgerEntry.objects.filter(reference="quiz_rb").exists())

    def test_operational_error_inside_open_unit_is_not_retried(self):
        calls = []

        @retry_on_store_error
        def flaky():
            calls.append(1)
            raise OperationalError("database is locked")

        # TestCase wraps each test in a transaction; the enclosing unit retries.
        with self.assertRaises(OperationalError):
            flaky()
        self.assertEqual(len(calls), 1)


# ============================================================
# Transient store errors
# ============================================================


class RetryOnStoreErrorTest(TransactionTestCase):
    def test_retries_then_succeeds(self):
        calls = []

        @retry_on_store_error
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("could not serialize access")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(calls), 3)

    def test_gives_up_with_store_unavailable(self):
        calls = []

        @retry_on_store_error
        def always_failing():
            calls.append(1)
            raise OperationalError("server closed the connection unexpectedly")

        with self.settings(LEDGER_STORE_MAX_RETRIES=2):
            with self.assertRaises(StoreUnavailable):
                always_failing()
        self.assertEqual(len(calls), 3)

    def test_business_errors_are_not_retried(self):
        user = make_user("alice")

        with patch("ledger.services.ledger.time.sleep") as mock_sleep:
            with self.assertRaises(InsufficientFunds):
                LedgerService.apply_entry(user.pk, EntryType.ADMIN_ADJUSTMENT, -5, "adj_r")
        mock_sleep.assert_not_called()


# ============================================================
# Reconciliation
# ============================================================


class ReconcileBalancesCommandTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("alice")
        fund(self.user, 120)

    def test_reports_no_drift(self):
        out = StringIO()
        call_command("reconcile_balances", stdout=out)
        self.assertIn("All wallet balances match", out.getvalue())

    def test_reports_drift_without_fixing(self):
        Wallet.objects.filter(user=self.user).update(balance=500)

        out = StringIO()
        call_command("reconcile_balances", stdout=out)

        self.assertIn("ledger_sum=120", out.getvalue())
        self.assertEqual(LedgerService.get_balance(self.user.pk), 500)

    def test_fix_rebuilds_balance_from_entries(self):
        Wallet.objects.filter(user=self.user).update(balance=500)

        out = StringIO()
        call_command("reconcile_balances", "--fix", stdout=out)

        self.assertIn("Rebuilt 1 wallet balance(s).", out.getvalue())
        self.assertEqual(LedgerService.get_balance(self.user.pk), 120)
        self.assertFalse(LedgerService.find_drift().exists())


# ============================================================
# Abuse Guard
# ============================================================


class AbuseGuardTest(TestCase):
    def setUp(self):
        cache.clear()

    def test_first_attempt_allowed(self):
        decision = AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)

        self.assertTrue(decision.allowed)
        bucket = RateLimitBucket.objects.get(actor_key="10.0.0.1", action_class=REFERRAL_APPLY)
        self.assertEqual(bucket.attempts, 1)

    def test_second_referral_attempt_denied_with_retry_after(self):
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)
        decision = AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)

        self.assertFalse(decision.allowed)
        self.assertGreater(decision.retry_after, 0)
        self.assertLessEqual(decision.retry_after, 24 * 60 * 60)

    def test_denied_attempt_is_not_recorded(self):
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)

        bucket = RateLimitBucket.objects.get(actor_key="10.0.0.1", action_class=REFERRAL_APPLY)
        self.assertEqual(bucket.attempts, 1)

    def test_actors_and_actions_are_independent(self):
        self.assertTrue(AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY).allowed)
        self.assertTrue(AbuseGuard.check_and_record("10.0.0.2", REFERRAL_APPLY).allowed)
        self.assertTrue(AbuseGuard.check_and_record("10.0.0.1", PASSWORD_RESET).allowed)

    def test_password_reset_allows_three_per_hour(self):
        results = [
            AbuseGuard.check_and_record("alice@example.com", PASSWORD_RESET).allowed
            for _ in range(4)
        ]
        self.assertEqual(results, [True, True, True, False])

    def test_vote_keyed_by_user_and_target(self):
        self.assertTrue(AbuseGuard.check_and_record(vote_actor_key(1, 10), VOTE).allowed)
        self.assertFalse(AbuseGuard.check_and_record(vote_actor_key(1, 10), VOTE).allowed)
        self.assertTrue(AbuseGuard.check_and_record(vote_actor_key(1, 11), VOTE).allowed)

    def test_window_resets_after_expiry(self):
        AbuseGuard.check_and_record("10.0.0.1", VOTE)
        self.assertFalse(AbuseGuard.check_and_record("10.0.0.1", VOTE).allowed)

        later = timezone.now() + timedelta(minutes=6)
        with patch("ledger.services.guard.timezone.now", return_value=later):
            decision = AbuseGuard.check_and_record("10.0.0.1", VOTE)

        self.assertTrue(decision.allowed)
        bucket = RateLimitBucket.objects.get(actor_key="10.0.0.1", action_class=VOTE)
        self.assertEqual(bucket.attempts, 1)
        self.assertEqual(bucket.window_started_at, later)

    def test_explicit_limits_override_rule(self):
        for _ in range(5):
            self.assertTrue(
                AbuseGuard.check_and_record("k", VOTE, window_seconds=60, max_attempts=5).allowed
            )
        self.assertFalse(
            AbuseGuard.check_and_record("k", VOTE, window_seconds=60, max_attempts=5).allowed
        )

    def test_setting_override(self):
        config.set_setting("rate_limit:referral_apply", {"max_attempts": 2})

        self.assertTrue(AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY).allowed)
        self.assertTrue(AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY).allowed)
        self.assertFalse(AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY).allowed)

    def test_enforce_raises_rate_limited(self):
        AbuseGuard.enforce("10.0.0.1", REFERRAL_APPLY)

        with self.assertRaises(RateLimited) as ctx:
            AbuseGuard.enforce("10.0.0.1", REFERRAL_APPLY)
        self.assertGreater(ctx.exception.retry_after, 0)

    def test_purge_expired(self):
        AbuseGuard.check_and_record("old", VOTE)
        AbuseGuard.check_and_record("fresh", VOTE)
        RateLimitBucket.objects.filter(actor_key="old").update(
            window_started_at=timezone.now() - timedelta(days=2)
        )

        deleted = AbuseGuard.purge_expired()

        self.assertEqual(deleted, 1)
        self.assertEqual(
            list(RateLimitBucket.objects.values_list("actor_key", flat=True)), ["fresh"]
        )

    def test_purge_keeps_buckets_inside_overridden_window(self):
        config.set_setting("rate_limit:referral_apply", {"window_seconds": 48 * 60 * 60})
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)
        AbuseGuard.check_and_record("10.0.0.2", REFERRAL_APPLY)
        RateLimitBucket.objects.filter(actor_key="10.0.0.1").update(
            window_started_at=timezone.now() - timedelta(hours=30)
        )
        RateLimitBucket.objects.filter(actor_key="10.0.0.2").update(
            window_started_at=timezone.now() - timedelta(hours=50)
        )

        deleted = AbuseGuard.purge_expired()

        self.assertEqual(deleted, 1)
        self.assertEqual(
            list(RateLimitBucket.objects.values_list("actor_key", flat=True)), ["10.0.0.1"]
        )
        # The surviving bucket still blocks the address.
        self.assertFalse(AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY).allowed)

    def test_purge_uses_each_action_window(self):
        AbuseGuard.check_and_record("10.0.0.1", VOTE)
        AbuseGuard.check_and_record("10.0.0.1", REFERRAL_APPLY)
        RateLimitBucket.objects.update(window_started_at=timezone.now() - timedelta(hours=1))

        deleted = AbuseGuard.purge_expired()

        self.assertEqual(deleted, 1)
        self.assertEqual(
            list(RateLimitBucket.objects.values_list("action_class", flat=True)),
            [REFERRAL_APPLY],
        )

    def test_purge_unconfigured_action_uses_longest_window(self):
        AbuseGuard.check_and_record("k", "custom", window_seconds=60, max_attempts=1)
        RateLimitBucket.objects.update(window_started_at=timezone.now() - timedelta(hours=2))

        self.assertEqual(AbuseGuard.purge_expired(), 0)

        RateLimitBucket.objects.update(window_started_at=timezone.now() - timedelta(days=2))
        self.assertEqual(AbuseGuard.purge_expired(), 1)


# ============================================================
# Referrals
# ============================================================


class ApplyReferralTest(TestCase):
    def setUp(self):
        cache.clear()
        self.referrer = make_user("rita")
        self.newcomer = make_user("nick")
        self.code = self.referrer.wallet.referral_code

    def test_referral_rewards_both_sides(self):
        config.set_setting("referral_coin_reward", 5)

        result = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")

        self.assertTrue(result.created)
        self.assertEqual(result.reward, 5)
        self.assertEqual(result.referrer_id, self.referrer.pk)
        self.assertEqual(LedgerService.get_balance(self.newcomer.pk), 5)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)

        applied = LedgerEntry.objects.get(wallet__user=self.newcomer)
        self.assertEqual(applied.entry_type, EntryType.REFERRAL_APPLIED)
        self.assertEqual(applied.reference, f"referral_applied_{self.referrer.pk}")
        bonus = LedgerEntry.objects.get(wallet__user=self.referrer)
        self.assertEqual(bonus.entry_type, EntryType.REFERRAL_BONUS)
        self.assertEqual(bonus.reference, f"referral_bonus_{self.newcomer.pk}")

        self.referrer.wallet.refresh_from_db()
        self.assertEqual(self.referrer.wallet.referral_count, 1)
        application = ReferralApplication.objects.get()
        self.assertEqual(application.ip_address, "10.0.0.1")
        self.assertEqual(application.reward_amount, 5)

    def test_default_reward_from_settings(self):
        with self.settings(DEFAULT_REFERRAL_COIN_REWARD=3):
            result = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")

        self.assertEqual(result.reward, 3)
        self.assertEqual(LedgerService.get_balance(self.newcomer.pk), 3)

    def test_invalid_setting_falls_back_to_default(self):
        config.set_setting("referral_coin_reward", "lots")

        result = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")
        self.assertEqual(result.reward, 1)

    def test_code_is_normalised(self):
        result = RewardService.apply_referral(
            self.newcomer.pk, f"  {self.code.lower()} ", "10.0.0.1"
        )
        self.assertTrue(result.created)

    def test_zero_reward_records_application_without_entries(self):
        config.set_setting("referral_coin_reward", 0)

        result = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")

        self.assertTrue(result.created)
        self.assertEqual(LedgerEntry.objects.count(), 0)
        self.assertEqual(ReferralApplication.objects.count(), 1)
        self.referrer.wallet.refresh_from_db()
        self.assertEqual(self.referrer.wallet.referral_count, 1)

    def test_replay_is_idempotent(self):
        config.set_setting("referral_coin_reward", 5)
        first = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")
        second = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(second.application_id, first.application_id)
        self.assertEqual(LedgerService.get_balance(self.newcomer.pk), 5)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)
        self.assertEqual(LedgerEntry.objects.count(), 2)
        self.referrer.wallet.refresh_from_db()
        self.assertEqual(self.referrer.wallet.referral_count, 1)

    def test_replay_from_other_address_is_not_rate_limited(self):
        RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")
        result = RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.9")
        self.assertFalse(result.created)

    def test_regenerated_code_of_same_referrer_raises_already_applied(self):
        RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")
        new_code = RewardService.regenerate_referral_code(self.referrer.pk)

        with self.assertRaises(AlreadyApplied):
            RewardService.apply_referral(self.newcomer.pk, new_code, "10.0.0.2")

    def test_self_referral_raises(self):
        own_code = self.newcomer.wallet.referral_code

        with self.assertRaises(SelfReferral):
            RewardService.apply_referral(self.newcomer.pk, own_code, "10.0.0.1")
        self.assertEqual(LedgerEntry.objects.count(), 0)

    def test_unknown_code_raises(self):
        with self.assertRaises(InvalidCode):
            RewardService.apply_referral(self.newcomer.pk, "NOPE0000", "10.0.0.1")

    def test_empty_code_raises(self):
        with self.assertRaises(InvalidCode):
            RewardService.apply_referral(self.newcomer.pk, "   ", "10.0.0.1")

    def test_unknown_applicant_raises(self):
        with self.assertRaises(Wallet.DoesNotExist):
            RewardService.apply_referral(999999, self.code, "10.0.0.1")

    def test_applicant_may_use_codes_of_different_referrers(self):
        other = make_user("olga")

        RewardService.apply_referral(self.newcomer.pk, self.code, "10.0.0.1")
        result = RewardService.apply_referral(
            self.newcomer.pk, other.wallet.referral_code, "10.0.0.2"
        )

        self.assertTrue(result.created)
        self.assertEqual(ReferralApplication.objects.filter(applicant__user=self.newcomer).count(), 2)

    def test_one_referral_per_address_per_day(self):
        config.set_setting("referral_coin_reward", 5)
        newcomers = [self.newcomer] + [make_user(f"new{i}") for i in range(3)]

        outcomes = []
        for user in newcomers:
            try:
                RewardService.apply_referral(user.pk, self.code, "203.0.113.7")
                outcomes.append("ok")
            except RateLimited:
                outcomes.append("limited")

        self.assertEqual(outcomes, ["ok", "limited", "limited", "limited"])
        self.assertEqual(LedgerEntry.objects.count(), 2)
        self.assertEqual(ReferralApplication.objects.count(), 1)
        self.referrer.wallet.refresh_from_db()
        self.assertEqual(self.referrer.wallet.referral_count, 1)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)

    def test_failed_attempts_do_not_consume_the_allowance(self):
        with self.assertRaises(InvalidCode):
            RewardService.apply_referral(self.newcomer.pk, "NOPE0000", "203.0.113.7")

        result = RewardService.apply_referral(self.newcomer.pk, self.code, "203.0.113.7")
        self.assertTrue(result.created)

    def test_missing_address_is_limited_as_one_actor(self):
        second = make_user("sara")

        RewardService.apply_referral(self.newcomer.pk, self.code, None)
        with self.assertRaises(RateLimited):
            RewardService.apply_referral(second.pk, self.code, None)

        self.assertIsNone(ReferralApplication.objects.get().ip_address)

    def test_unparseable_address_is_not_stored(self):
        RewardService.apply_referral(self.newcomer.pk, self.code, "unknown")
        self.assertIsNone(ReferralApplication.objects.get().ip_address)


# ============================================================
# Quiz rewards
# ============================================================


class QuizRewardTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("quinn")

    def test_quiz_reward_paid_once(self):
        entry, created = RewardService.apply_quiz_reward(self.user.pk, 42, 30)
        _, created_again = RewardService.apply_quiz_reward(self.user.pk, 42, 30)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(entry.reference, f"quiz_reward_42_{self.user.pk}")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 30)

    def test_different_quizzes_pay_separately(self):
        RewardService.apply_quiz_reward(self.user.pk, 1, 10)
        RewardService.apply_quiz_reward(self.user.pk, 2, 10)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 20)

    def test_zero_reward_writes_nothing(self):
        self.assertEqual(RewardService.apply_quiz_reward(self.user.pk, 1, 0), (None, False))
        self.assertEqual(LedgerEntry.objects.count(), 0)

    def test_negative_reward_raises(self):
        with self.assertRaises(ValueError):
            RewardService.apply_quiz_reward(self.user.pk, 1, -5)

    def test_compute_quiz_reward_tiers(self):
        rewards = {"participation": 5, "first_place": 50, "second_place": 30, "third_place": 10}

        self.assertEqual(compute_quiz_reward(9, 10, rewards), 55)
        self.assertEqual(compute_quiz_reward(10, 10, rewards), 55)
        self.assertEqual(compute_quiz_reward(7, 10, rewards), 35)
        self.assertEqual(compute_quiz_reward(5, 10, rewards), 15)
        self.assertEqual(compute_quiz_reward(3, 10, rewards), 5)

    def test_compute_quiz_reward_without_points(self):
        self.assertEqual(compute_quiz_reward(0, 0, {"participation": 2, "first_place": 50}), 2)
        self.assertEqual(compute_quiz_reward(10, 10, {}), 0)


# ============================================================
# Admin adjustments / penalties
# ============================================================


class AdminAdjustmentTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("alice")
        self.admin = make_user("root", is_staff=True)

    def test_credit_and_debit(self):
        RewardService.grant_admin_adjustment(self.user.pk, 100, reference="batch-1", admin=self.admin)
        entry, created = RewardService.grant_admin_adjustment(
            self.user.pk, -40, reference="batch-2", admin=self.admin
        )

        self.assertTrue(created)
        self.assertEqual(entry.metadata["admin_id"], self.admin.pk)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 60)

    def test_same_reference_applies_once(self):
        RewardService.grant_admin_adjustment(self.user.pk, 100, reference="batch-1")
        _, created = RewardService.grant_admin_adjustment(self.user.pk, 100, reference="batch-1")

        self.assertFalse(created)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 100)

    def test_without_reference_each_call_applies(self):
        RewardService.grant_admin_adjustment(self.user.pk, 10)
        RewardService.grant_admin_adjustment(self.user.pk, 10)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 20)

    def test_debit_below_zero_raises(self):
        fund(self.user, 10)
        with self.assertRaises(InsufficientFunds):
            RewardService.grant_admin_adjustment(self.user.pk, -11, reference="too-much")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 10)


class FraudPenaltyTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("mallory")

    def test_penalty_within_balance(self):
        fund(self.user, 100)
        entry, created = RewardService.apply_fraud_penalty(self.user.pk, 40, "fraud_case_1")

        self.assertTrue(created)
        self.assertEqual(entry.amount, -40)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 60)

    def test_penalty_clamped_to_balance(self):
        fund(self.user, 30)
        entry, _ = RewardService.apply_fraud_penalty(self.user.pk, 100, "fraud_case_2")

        self.assertEqual(entry.amount, -30)
        self.assertEqual(entry.metadata["requested"], 100)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 0)

    def test_penalty_on_empty_wallet_writes_nothing(self):
        self.assertEqual(RewardService.apply_fraud_penalty(self.user.pk, 10, "fraud_case_3"), (None, False))
        self.assertEqual(LedgerEntry.objects.count(), 0)

    def test_penalty_applied_once_per_reference(self):
        fund(self.user, 100)
        RewardService.apply_fraud_penalty(self.user.pk, 10, "fraud_case_4")
        _, created = RewardService.apply_fraud_penalty(self.user.pk, 10, "fraud_case_4")

        self.assertFalse(created)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 90)

    def test_non_positive_penalty_raises(self):
        with self.assertRaises(ValueError):
            RewardService.apply_fraud_penalty(self.user.pk, 0, "fraud_case_5")


class RegenerateReferralCodeTest(TestCase):
    def test_new_code_replaces_old(self):
        user = make_user("alice")
        old = user.wallet.referral_code

        new = RewardService.regenerate_referral_code(user.pk)

        user.wallet.refresh_from_db()
        self.assertEqual(user.wallet.referral_code, new)
        self.assertTrue(new.startswith("ALI"))
        self.assertNotEqual(new, old)


# ============================================================
# Referral concurrency (needs row locks: run with TEST_DATABASE_URL=postgres://...)
# ============================================================


@unittest.skipUnless(
    connection.features.has_select_for_update, "database does not support row locking"
)
class ConcurrentReferralTest(TransactionTestCase):
    def setUp(self):
        cache.clear()
        config.set_setting("referral_coin_reward", 5)
        self.referrer = make_user("rita")
        self.newcomer = make_user("nick")

    def test_same_code_applied_twice_at_once_credits_once(self):
        code = self.referrer.wallet.referral_code
        results = []
        barrier = threading.Barrier(2)

        def attempt():
            try:
                barrier.wait()
                results.append(RewardService.apply_referral(self.newcomer.pk, code, "10.0.0.1"))
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(result.created for result in results), [False, True])
        self.assertEqual(ReferralApplication.objects.count(), 1)
        self.assertEqual(
            LedgerEntry.objects.filter(entry_type=EntryType.REFERRAL_APPLIED).count(), 1
        )
        self.assertEqual(LedgerService.get_balance(self.newcomer.pk), 5)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)
        self.assertFalse(LedgerService.find_drift().exists())


# ============================================================
# Purchase
# ============================================================


class PurchaseServiceTest(TestCase):
    def setUp(self):
        cache.clear()
        self.buyer = make_user("bea")
        fund(self.buyer, 100)

    def test_purchase_debits_and_records_order(self):
        item = make_item(coin_cost=30, inventory=5, category=StoreItem.Category.REDEEM_CODE, redeem_code="CODE-1")

        order = PurchaseService.purchase(self.buyer.pk, item.pk, quantity=2)

        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(order.total_cost, 60)
        self.assertEqual(order.balance_before, 100)
        self.assertEqual(order.balance_after, 40)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 40)

        entry = LedgerEntry.objects.get(entry_type=LedgerEntry.EntryType.STORE_PURCHASE)
        self.assertEqual(entry.amount, -60)
        self.assertEqual(entry.reference, f"order_{order.transaction_id}")

        item.refresh_from_db()
        self.assertEqual(item.inventory, 3)
        self.assertEqual(item.sold_count, 2)

        line = order.items.get()
        self.assertEqual(line.quantity, 2)
        self.assertEqual(line.unit_price, 30)
        self.assertEqual(line.revealed_redeem_code, "CODE-1")

    def test_unlimited_item_only_counts_sales(self):
        item = make_item(coin_cost=10, inventory=None)

        PurchaseService.purchase(self.buyer.pk, item.pk, quantity=3)

        item.refresh_from_db()
        self.assertIsNone(item.inventory)
        self.assertEqual(item.sold_count, 3)

    def test_price_captured_at_purchase_time(self):
        item = make_item(coin_cost=10)
        order = PurchaseService.purchase(self.buyer.pk, item.pk)

        StoreItem.objects.filter(pk=item.pk).update(coin_cost=99)

        self.assertEqual(order.items.get().unit_price, 10)

    def test_free_item_writes_no_entry(self):
        item = make_item(coin_cost=0)

        order = PurchaseService.purchase(self.buyer.pk, item.pk)

        self.assertEqual(order.total_cost, 0)
        self.assertFalse(
            LedgerEntry.objects.filter(entry_type=LedgerEntry.EntryType.STORE_PURCHASE).exists()
        )

    def test_insufficient_funds_changes_nothing(self):
        item = make_item(coin_cost=60, inventory=5)

        with self.assertRaises(InsufficientFunds) as ctx:
            PurchaseService.purchase(self.buyer.pk, item.pk, quantity=2)

        self.assertEqual(ctx.exception.required, 120)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)
        self.assertEqual(Order.objects.count(), 0)
        item.refresh_from_db()
        self.assertEqual(item.inventory, 5)

    def test_out_of_stock_changes_nothing(self):
        item = make_item(coin_cost=10, inventory=1)

        with self.assertRaises(OutOfStock):
            PurchaseService.purchase(self.buyer.pk, item.pk, quantity=2)

        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)
        self.assertEqual(Order.objects.count(), 0)

    def test_sold_out_item(self):
        item = make_item(coin_cost=10, inventory=0)

        with self.assertRaises(OutOfStock):
            PurchaseService.purchase(self.buyer.pk, item.pk)

    def test_inactive_item_raises(self):
        item = make_item(coin_cost=10, is_active=False)

        with self.assertRaises(ItemUnavailable):
            PurchaseService.purchase(self.buyer.pk, item.pk)

    def test_unknown_item_raises(self):
        with self.assertRaises(StoreItem.DoesNotExist):
            PurchaseService.purchase(self.buyer.pk, 999999)

    def test_non_positive_quantity_raises(self):
        item = make_item(coin_cost=10)

        with self.assertRaises(ValueError):
            PurchaseService.purchase(self.buyer.pk, item.pk, quantity=0)

    def test_failure_after_debit_rolls_back_everything(self):
        item = make_item(coin_cost=30, inventory=5)

        with patch(
            "ledger.services.purchase.OrderItem.objects.create",
            side_effect=RuntimeError("disk full"),
        ):
            with self.assertRaises(RuntimeError):
                PurchaseService.purchase(self.buyer.pk, item.pk)

        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)
        self.assertEqual(Order.objects.count(), 0)
        self.assertFalse(
            LedgerEntry.objects.filter(entry_type=LedgerEntry.EntryType.STORE_PURCHASE).exists()
        )
        item.refresh_from_db()
        self.assertEqual(item.inventory, 5)
        self.assertEqual(item.sold_count, 0)

    def test_idempotency_key_returns_stored_order(self):
        item = make_item(coin_cost=30, inventory=5)

        first = PurchaseService.purchase(self.buyer.pk, item.pk, idempotency_key="key-1")
        second = PurchaseService.purchase(self.buyer.pk, item.pk, idempotency_key="key-1")

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 70)
        item.refresh_from_db()
        self.assertEqual(item.inventory, 4)

    def test_idempotency_key_of_other_buyer_raises(self):
        item = make_item(coin_cost=10)
        other = make_user("oscar")
        fund(other, 50)
        PurchaseService.purchase(self.buyer.pk, item.pk, idempotency_key="key-2")

        with self.assertRaises(ValueError):
            PurchaseService.purchase(other.pk, item.pk, idempotency_key="key-2")
        self.assertEqual(LedgerService.get_balance(other.pk), 50)

    def test_last_unit_sells_once(self):
        item = make_item(coin_cost=10, inventory=1)
        other = make_user("oscar")
        fund(other, 50)

        PurchaseService.purchase(self.buyer.pk, item.pk)
        with self.assertRaises(OutOfStock):
            PurchaseService.purchase(other.pk, item.pk)

        item.refresh_from_db()
        self.assertEqual(item.inventory, 0)
        self.assertEqual(item.sold_count, 1)
        self.assertEqual(LedgerService.get_balance(other.pk), 50)


# ============================================================
# Refunds
# ============================================================


class RefundTest(TestCase):
    def setUp(self):
        cache.clear()
        self.buyer = make_user("bea")
        self.admin = make_user("root", is_staff=True)
        fund(self.buyer, 100)
        self.item = make_item(coin_cost=25, inventory=4)
        self.order = PurchaseService.purchase(self.buyer.pk, self.item.pk, quantity=2)

    def test_refund_restores_coins_and_stock(self):
        order = PurchaseService.refund(self.order.pk, admin=self.admin)

        self.assertEqual(order.status, Order.Status.REFUNDED)
        self.assertEqual(order.refunded_by, self.admin)
        self.assertIsNotNone(order.refunded_at)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)
        refund = LedgerEntry.objects.get(entry_type=LedgerEntry.EntryType.STORE_REFUND)
        self.assertEqual(refund.amount, 50)
        self.assertEqual(refund.reference, self.order.reference)

        self.item.refresh_from_db()
        self.assertEqual(self.item.inventory, 4)
        self.assertEqual(self.item.sold_count, 0)

    def test_second_refund_raises(self):
        PurchaseService.refund(self.order.pk)

        with self.assertRaises(AlreadyProcessed):
            PurchaseService.refund(self.order.pk)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)


# ============================================================
# Cart / checkout
# ============================================================


class CartServiceTest(TestCase):
    def setUp(self):
        cache.clear()
        self.buyer = make_user("bea")
        fund(self.buyer, 100)
        self.stickers = make_item(name="Stickers", coin_cost=10, inventory=10)
        self.badge = make_item(name="Badge", coin_cost=25, inventory=1)

    def test_add_item_merges_quantities(self):
        CartService.add_item(self.buyer.pk, self.stickers.pk, 2)
        line = CartService.add_item(self.buyer.pk, self.stickers.pk, 3)

        self.assertEqual(line.quantity, 5)
        self.assertEqual(CartItem.objects.count(), 1)

    def test_count_is_cached_and_invalidated(self):
        self.assertEqual(CartService.count(self.buyer.pk), 0)

        CartService.add_item(self.buyer.pk, self.stickers.pk, 2)
        self.assertEqual(CartService.count(self.buyer.pk), 2)

        CartService.add_item(self.buyer.pk, self.badge.pk)
        self.assertEqual(CartService.count(self.buyer.pk), 3)

        CartService.remove_item(self.buyer.pk, self.stickers.pk)
        self.assertEqual(CartService.count(self.buyer.pk), 1)

    def test_cannot_add_inactive_item(self):
        hidden = make_item(coin_cost=5, is_active=False)

        with self.assertRaises(ItemUnavailable):
            CartService.add_item(self.buyer.pk, hidden.pk)

    def test_remove_missing_line(self):
        self.assertFalse(CartService.remove_item(self.buyer.pk, self.stickers.pk))

    def test_checkout_buys_every_line_and_clears_cart(self):
        CartService.add_item(self.buyer.pk, self.stickers.pk, 2)
        CartService.add_item(self.buyer.pk, self.badge.pk)
        self.assertEqual(CartService.count(self.buyer.pk), 3)

        with self.captureOnCommitCallbacks(execute=True):
            order = PurchaseService.checkout(self.buyer.pk)

        self.assertEqual(order.total_cost, 45)
        self.assertEqual(order.items.count(), 2)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 55)
        self.assertEqual(
            LedgerEntry.objects.filter(entry_type=LedgerEntry.EntryType.STORE_PURCHASE).count(), 1
        )
        self.assertFalse(CartItem.objects.exists())
        self.assertEqual(CartService.count(self.buyer.pk), 0)

    def test_checkout_failure_keeps_cart(self):
        CartService.add_item(self.buyer.pk, self.stickers.pk, 2)
        CartService.add_item(self.buyer.pk, self.badge.pk, 2)

        with self.assertRaises(OutOfStock):
            PurchaseService.checkout(self.buyer.pk)

        self.assertEqual(CartItem.objects.count(), 2)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 100)
        self.stickers.refresh_from_db()
        self.assertEqual(self.stickers.inventory, 10)

    def test_checkout_empty_cart_raises(self):
        with self.assertRaises(ValueError):
            PurchaseService.checkout(self.buyer.pk)

    def test_second_purchase_of_last_unit_fails_cleanly(self):
        item = make_item(coin_cost=30, inventory=1)

        PurchaseService.purchase(self.buyer.pk, item.pk)
        with self.assertRaises(OutOfStock):
            PurchaseService.purchase(self.buyer.pk, item.pk)

        item.refresh_from_db()
        self.assertEqual(item.inventory, 0)
        self.assertEqual(LedgerService.get_balance(self.buyer.pk), 70)
        self.assertEqual(Order.objects.count(), 1)


# ============================================================
# Purchase concurrency (needs row locks: run with TEST_DATABASE_URL=postgres://...)
# ============================================================


@unittest.skipUnless(
    connection.features.has_select_for_update, "database does not support row locking"
)
class ConcurrentPurchaseTest(TransactionTestCase):
    def setUp(self):
        cache.clear()

    def test_same_user_buys_last_unit_once(self):
        item = make_item(coin_cost=30, inventory=1)
        buyer = make_user("twin")
        fund(buyer, 100)

        results = []
        barrier = threading.Barrier(2)

        def attempt():
            try:
                barrier.wait()
                PurchaseService.purchase(buyer.pk, item.pk)
                results.append("ok")
            except OutOfStock:
                results.append("out_of_stock")
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(results), ["ok", "out_of_stock"])
        item.refresh_from_db()
        self.assertEqual(item.inventory, 0)
        self.assertEqual(LedgerService.get_balance(buyer.pk), 70)
        self.assertEqual(Order.objects.count(), 1)
        self.assertFalse(LedgerService.find_drift().exists())

    def test_last_unit_sold_exactly_once(self):
        item = make_item(coin_cost=10, inventory=1)
        buyers = [make_user(f"buyer{i}") for i in range(5)]
        for buyer in buyers:
            fund(buyer, 10)

        results = []
        barrier = threading.Barrier(len(buyers))

        def attempt(user_id):
            try:
                barrier.wait()
                PurchaseService.purchase(user_id, item.pk)
                results.append("ok")
            except OutOfStock:
                results.append("out_of_stock")
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt, args=(buyer.pk,)) for buyer in buyers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("ok"), 1)
        self.assertEqual(results.count("out_of_stock"), 4)
        item.refresh_from_db()
        self.assertEqual(item.inventory, 0)
        self.assertEqual(Order.objects.count(), 1)
        self.assertFalse(LedgerService.find_drift().exists())

    def test_concurrent_debits_never_overdraw(self):
        item = make_item(coin_cost=10)
        buyer = make_user("spender")
        fund(buyer, 30)

        results = []
        barrier = threading.Barrier(6)

        def attempt():
            try:
                barrier.wait()
                PurchaseService.purchase(buyer.pk, item.pk)
                results.append("ok")
            except InsufficientFunds:
                results.append("insufficient")
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("ok"), 3)
        self.assertEqual(LedgerService.get_balance(buyer.pk), 0)
        self.assertFalse(LedgerService.find_drift().exists())


# ============================================================
# Withdrawals
# ============================================================


class WithdrawalServiceTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("wendy")
        self.admin = make_user("root", is_staff=True)
        fund(self.user, 200)

    def test_request_holds_coins(self):
        withdrawal = WithdrawalService.request(
            self.user.pk, 50, "paypal", {"email": "wendy@example.com"}
        )

        self.assertEqual(withdrawal.status, Withdrawal.Status.PENDING)
        self.assertEqual(withdrawal.payment_details, {"email": "wendy@example.com"})
        self.assertEqual(LedgerService.get_balance(self.user.pk), 150)
        entry = LedgerEntry.objects.get(entry_type=EntryType.WITHDRAWAL_REQUEST)
        self.assertEqual(entry.amount, -50)
        self.assertEqual(entry.reference, f"withdrawal_{withdrawal.pk}")

    def test_request_more_than_balance_raises(self):
        with self.assertRaises(InsufficientFunds):
            WithdrawalService.request(self.user.pk, 201, "paypal")

        self.assertEqual(Withdrawal.objects.count(), 0)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

    def test_request_non_positive_amount_raises(self):
        with self.assertRaises(ValueError):
            WithdrawalService.request(self.user.pk, 0, "paypal")

    def test_approve_keeps_coins_debited(self):
        withdrawal = WithdrawalService.request(self.user.pk, 50, "paypal")

        approved = WithdrawalService.approve(withdrawal.pk, admin=self.admin)

        self.assertEqual(approved.status, Withdrawal.Status.APPROVED)
        self.assertEqual(approved.processed_by, self.admin)
        self.assertIsNotNone(approved.processed_at)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 150)

    def test_reject_returns_coins_once(self):
        withdrawal = WithdrawalService.request(self.user.pk, 50, "paypal")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 150)

        rejected = WithdrawalService.reject(withdrawal.pk, admin=self.admin, reason="Bad details")

        self.assertEqual(rejected.status, Withdrawal.Status.REJECTED)
        self.assertEqual(rejected.rejection_reason, "Bad details")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

        with self.assertRaises(AlreadyProcessed):
            WithdrawalService.reject(withdrawal.pk, admin=self.admin)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)
        self.assertEqual(
            LedgerEntry.objects.filter(entry_type=EntryType.WITHDRAWAL_HOLD_RELEASE).count(), 1
        )

    def test_approved_withdrawal_cannot_be_rejected(self):
        withdrawal = WithdrawalService.request(self.user.pk, 50, "paypal")
        WithdrawalService.approve(withdrawal.pk)

        with self.assertRaises(AlreadyProcessed):
            WithdrawalService.reject(withdrawal.pk)
        with self.assertRaises(AlreadyProcessed):
            WithdrawalService.approve(withdrawal.pk)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 150)

    def test_unknown_withdrawal_raises(self):
        with self.assertRaises(Withdrawal.DoesNotExist):
            WithdrawalService.approve(999999)

    def test_cancel_returns_coins_and_deletes(self):
        withdrawal = WithdrawalService.request(self.user.pk, 80, "bank")

        refunded = WithdrawalService.cancel(withdrawal.pk, self.user.pk)

        self.assertEqual(refunded, 80)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)
        self.assertFalse(Withdrawal.objects.filter(pk=withdrawal.pk).exists())

    def test_cancel_by_other_user_raises(self):
        withdrawal = WithdrawalService.request(self.user.pk, 80, "bank")
        other = make_user("oscar")

        with self.assertRaises(PermissionDenied):
            WithdrawalService.cancel(withdrawal.pk, other.pk)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 120)

    def test_cancel_processed_withdrawal_raises(self):
        withdrawal = WithdrawalService.request(self.user.pk, 80, "bank")
        WithdrawalService.approve(withdrawal.pk)

        with self.assertRaises(AlreadyProcessed):
            WithdrawalService.cancel(withdrawal.pk, self.user.pk)

    def test_ledger_reconciles_through_workflow(self):
        first = WithdrawalService.request(self.user.pk, 50, "paypal")
        second = WithdrawalService.request(self.user.pk, 70, "paypal")
        WithdrawalService.approve(first.pk)
        WithdrawalService.reject(second.pk)

        wallet = LedgerService.get_wallet(self.user.pk)
        self.assertEqual(wallet.balance, 150)
        self.assertEqual(LedgerService.ledger_sum(wallet), wallet.balance)


# ============================================================
# API Tests
# ============================================================


class APITestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = make_user("alice")
        self.client.force_authenticate(user=self.user)


# ============================================================
# Wallet API
# ============================================================


class WalletAPITest(APITestCase):
    def test_retrieve_wallet(self):
        fund(self.user, 40)

        response = self.client.get("/api/wallet/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], 40)
        self.assertEqual(response.data["referral_code"], self.user.wallet.referral_code)

    def test_requires_authentication(self):
        response = APIClient().get("/api/wallet/")
        self.assertIn(response.status_code, (401, 403))

    def test_history(self):
        fund(self.user, 40)
        LedgerService.apply_entry(self.user.pk, "quiz_reward", 5, "quiz_reward_1_x")

        response = self.client.get("/api/wallet/entries/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 2)
        self.assertEqual(response.data["results"][0]["entry_type"], "quiz_reward")
        self.assertEqual(response.data["results"][0]["balance_after"], 45)

    def test_history_filter_by_type(self):
        fund(self.user, 40)
        LedgerService.apply_entry(self.user.pk, "quiz_reward", 5, "quiz_reward_1_x")

        response = self.client.get("/api/wallet/entries/?type=QUIZ_REWARD")

        self.assertEqual(response.data["count"], 1)


# ============================================================
# Referral API
# ============================================================


class ReferralAPITest(APITestCase):
    def setUp(self):
        super().setUp()
        self.referrer = make_user("rita")
        config.set_setting("referral_coin_reward", 5)

    def test_apply_referral(self):
        response = self.client.post(
            "/api/referrals/apply/",
            {"referral_code": self.referrer.wallet.referral_code},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.data["created"])
        self.assertEqual(response.data["balance"], 5)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)

    def test_replay_returns_200(self):
        payload = {"referral_code": self.referrer.wallet.referral_code}
        self.client.post("/api/referrals/apply/", payload, format="json")

        response = self.client.post("/api/referrals/apply/", payload, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["created"])
        self.assertEqual(response.data["balance"], 5)

    def test_self_referral(self):
        response = self.client.post(
            "/api/referrals/apply/",
            {"referral_code": self.user.wallet.referral_code},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "self_referral")

    def test_invalid_code(self):
        response = self.client.post(
            "/api/referrals/apply/", {"referral_code": "ZZZ0000"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_code")

    def test_missing_code(self):
        response = self.client.post("/api/referrals/apply/", {}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_spoofed_forwarded_for_shares_one_address_limit(self):
        statuses = []
        for i in range(4):
            client = APIClient()
            client.force_authenticate(user=self.user if i == 0 else make_user(f"sybil{i}"))
            response = client.post(
                "/api/referrals/apply/",
                {"referral_code": self.referrer.wallet.referral_code},
                format="json",
                REMOTE_ADDR="198.51.100.9",
                HTTP_X_FORWARDED_FOR=f"10.9.9.{i}",
            )
            statuses.append(response.status_code)

        self.assertEqual(statuses, [201, 429, 429, 429])
        self.assertEqual(response.data["code"], "rate_limited")
        self.assertGreater(int(response["Retry-After"]), 0)
        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 5)
        self.assertEqual(ReferralApplication.objects.count(), 1)

    @override_settings(TRUSTED_PROXY_COUNT=1)
    def test_distinct_clients_behind_trusted_proxy(self):
        for i, client_user in enumerate([self.user, make_user("bob")]):
            client = APIClient()
            client.force_authenticate(user=client_user)
            response = client.post(
                "/api/referrals/apply/",
                {"referral_code": self.referrer.wallet.referral_code},
                format="json",
                REMOTE_ADDR="10.0.0.1",
                HTTP_X_FORWARDED_FOR=f"198.51.100.{i + 1}",
            )
            self.assertEqual(response.status_code, 201)

        self.assertEqual(LedgerService.get_balance(self.referrer.pk), 10)

    def test_regenerate_referral_code(self):
        old_code = self.user.wallet.referral_code

        response = self.client.post("/api/referrals/code/regenerate/")

        self.assertEqual(response.status_code, 200)
        self.assertNotEqual(response.data["referral_code"], old_code)
        self.user.wallet.refresh_from_db()
        self.assertEqual(self.user.wallet.referral_code, response.data["referral_code"])

        other_client = APIClient()
        other_client.force_authenticate(user=make_user("carol"))
        response = other_client.post(
            "/api/referrals/apply/", {"referral_code": old_code}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_code")


# ============================================================
# Store API
# ============================================================


class StoreAPITest(APITestCase):
    def setUp(self):
        super().setUp()
        fund(self.user, 100)
        self.item = make_item(name="Badge", coin_cost=30, inventory=2, redeem_code="HIDDEN")

    def test_list_items_hides_redeem_code(self):
        make_item(name="Retired", is_active=False)

        response = self.client.get("/api/store/items/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        self.assertNotIn("redeem_code", response.data["results"][0])

    def test_purchase(self):
        response = self.client.post(
            "/api/store/purchase/", {"item_id": self.item.pk, "quantity": 2}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["total_cost"], 60)
        self.assertEqual(response.data["balance_after"], 40)
        self.assertEqual(len(response.data["items"]), 1)

    def test_purchase_with_idempotency_key(self):
        payload = {"item_id": self.item.pk}
        response1 = self.client.post(
            "/api/store/purchase/", payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-123"
        )
        response2 = self.client.post(
            "/api/store/purchase/", payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-123"
        )

        self.assertEqual(response1.data["transaction_id"], response2.data["transaction_id"])
        self.assertEqual(LedgerService.get_balance(self.user.pk), 70)

    def test_purchase_insufficient_funds(self):
        expensive = make_item(coin_cost=500)

        response = self.client.post(
            "/api/store/purchase/", {"item_id": expensive.pk}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_funds")
        self.assertEqual(response.data["balance"], 100)
        self.assertEqual(response.data["required"], 500)

    def test_purchase_out_of_stock(self):
        response = self.client.post(
            "/api/store/purchase/", {"item_id": self.item.pk, "quantity": 3}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "out_of_stock")

    def test_purchase_unknown_item(self):
        response = self.client.post("/api/store/purchase/", {"item_id": 999999}, format="json")
        self.assertEqual(response.status_code, 404)

    def test_purchase_zero_quantity(self):
        response = self.client.post(
            "/api/store/purchase/", {"item_id": self.item.pk, "quantity": 0}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_store_unavailable_returns_503(self):
        with patch(
            "ledger.views.store.PurchaseService.purchase", side_effect=StoreUnavailable()
        ):
            response = self.client.post(
                "/api/store/purchase/", {"item_id": self.item.pk}, format="json"
            )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["code"], "store_unavailable")

    def test_orders_list(self):
        self.client.post("/api/store/purchase/", {"item_id": self.item.pk}, format="json")

        response = self.client.get("/api/store/orders/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)

    def test_cart_flow(self):
        response = self.client.post(
            "/api/store/cart/", {"item_id": self.item.pk, "quantity": 2}, format="json"
        )
        self.assertEqual(response.status_code, 201)

        response = self.client.get("/api/store/cart/count/")
        self.assertEqual(response.data["count"], 2)

        response = self.client.get("/api/store/cart/")
        self.assertEqual(len(response.data["items"]), 1)

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post("/api/store/checkout/", format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["total_cost"], 60)

        response = self.client.get("/api/store/cart/count/")
        self.assertEqual(response.data["count"], 0)

    def test_remove_from_cart(self):
        self.client.post("/api/store/cart/", {"item_id": self.item.pk}, format="json")

        response = self.client.delete(f"/api/store/cart/{self.item.pk}/")
        self.assertEqual(response.status_code, 204)

        response = self.client.delete(f"/api/store/cart/{self.item.pk}/")
        self.assertEqual(response.status_code, 404)

    def test_checkout_empty_cart(self):
        response = self.client.post("/api/store/checkout/", format="json")
        self.assertEqual(response.status_code, 400)

    def test_purchase_quantity_out_of_range(self):
        response = self.client.post(
            "/api/store/purchase/", {"item_id": self.item.pk, "quantity": 10**20}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("quantity", response.data)

    def test_purchase_item_id_out_of_range(self):
        response = self.client.post("/api/store/purchase/", {"item_id": 10**20}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("item_id", response.data)

    def test_cart_quantity_out_of_range(self):
        response = self.client.post(
            "/api/store/cart/", {"item_id": self.item.pk, "quantity": 10**20}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_cart_quantity_cannot_grow_past_column(self):
        payload = {"item_id": self.item.pk, "quantity": 2147483647}
        self.client.post("/api/store/cart/", payload, format="json")

        response = self.client.post(
            "/api/store/cart/", {"item_id": self.item.pk, "quantity": 1}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid")

    def test_overlong_idempotency_key(self):
        response = self.client.post(
            "/api/store/purchase/",
            {"item_id": self.item.pk},
            format="json",
            HTTP_IDEMPOTENCY_KEY="k" * 65,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid")
        self.assertFalse(Order.objects.exists())
        self.assertEqual(LedgerService.get_balance(self.user.pk), 100)

    def test_overlong_idempotency_key_on_checkout(self):
        self.client.post("/api/store/cart/", {"item_id": self.item.pk}, format="json")

        response = self.client.post(
            "/api/store/checkout/", format="json", HTTP_IDEMPOTENCY_KEY="k" * 65
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Order.objects.exists())


# ============================================================
# Withdrawal API
# ============================================================


class WithdrawalAPITest(APITestCase):
    def setUp(self):
        super().setUp()
        fund(self.user, 200)

    def test_request_withdrawal(self):
        response = self.client.post(
            "/api/withdrawals/",
            {"amount": 50, "payment_method": "paypal", "payment_details": {"email": "a@b.c"}},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["withdrawal"]["status"], "pending")
        self.assertEqual(response.data["balance"], 150)

    def test_request_withdrawal_invalid_amount(self):
        response = self.client.post(
            "/api/withdrawals/", {"amount": 0, "payment_method": "paypal"}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_request_withdrawal_insufficient_funds(self):
        response = self.client.post(
            "/api/withdrawals/", {"amount": 500, "payment_method": "paypal"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_funds")

    def test_request_withdrawal_amount_out_of_range(self):
        response = self.client.post(
            "/api/withdrawals/", {"amount": 10**20, "payment_method": "paypal"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.data)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

    def test_large_withdrawal_within_column_is_refused_for_funds(self):
        response = self.client.post(
            "/api/withdrawals/", {"amount": 2**40, "payment_method": "paypal"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_funds")

    def test_list_own_withdrawals(self):
        WithdrawalService.request(self.user.pk, 10, "paypal")
        other = make_user("oscar")
        fund(other, 10)
        WithdrawalService.request(other.pk, 10, "paypal")

        response = self.client.get("/api/withdrawals/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)

    def test_cancel_withdrawal(self):
        withdrawal = WithdrawalService.request(self.user.pk, 50, "paypal")

        response = self.client.delete(f"/api/withdrawals/{withdrawal.pk}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["refunded"], 50)
        self.assertEqual(response.data["balance"], 200)

    def test_cancel_someone_elses_withdrawal(self):
        other = make_user("oscar")
        fund(other, 10)
        withdrawal = WithdrawalService.request(other.pk, 10, "paypal")

        response = self.client.delete(f"/api/withdrawals/{withdrawal.pk}/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(Withdrawal.objects.filter(pk=withdrawal.pk).exists())


# ============================================================
# Admin API
# ============================================================


class AdminAPITest(APITestCase):
    def setUp(self):
        super().setUp()
        self.admin = make_user("root", is_staff=True)
        self.admin_client = APIClient()
        self.admin_client.force_authenticate(user=self.admin)
        fund(self.user, 200)

    def test_non_admin_forbidden(self):
        response = self.client.post(
            f"/api/admin/users/{self.user.pk}/coins/", {"amount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 403)

    def test_coin_adjustment(self):
        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/coins/",
            {"amount": -50, "reference": "support-ticket-7"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["balance"], 150)

        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/coins/",
            {"amount": -50, "reference": "support-ticket-7"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["created"])
        self.assertEqual(response.data["balance"], 150)

    def test_coin_adjustment_zero_amount(self):
        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/coins/", {"amount": 0}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_coin_adjustment_out_of_range(self):
        for amount in (10**20, -(10**20)):
            response = self.admin_client.post(
                f"/api/admin/users/{self.user.pk}/coins/", {"amount": amount}, format="json"
            )
            self.assertEqual(response.status_code, 400)
            self.assertIn("amount", response.data)

        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

    def test_coin_adjustment_unknown_user(self):
        response = self.admin_client.post(
            "/api/admin/users/999999/coins/", {"amount": 5}, format="json"
        )
        self.assertEqual(response.status_code, 404)

    def test_approve_and_reject(self):
        first = WithdrawalService.request(self.user.pk, 50, "paypal")
        second = WithdrawalService.request(self.user.pk, 30, "paypal")

        response = self.admin_client.post(f"/api/admin/withdrawals/{first.pk}/approve/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "approved")

        response = self.admin_client.post(
            f"/api/admin/withdrawals/{second.pk}/reject/", {"reason": "Wrong account"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["rejection_reason"], "Wrong account")
        self.assertEqual(LedgerService.get_balance(self.user.pk), 150)

        response = self.admin_client.post(f"/api/admin/withdrawals/{second.pk}/reject/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "already_processed")

    def test_pending_withdrawals_list(self):
        first = WithdrawalService.request(self.user.pk, 50, "paypal")
        WithdrawalService.request(self.user.pk, 30, "paypal")
        WithdrawalService.approve(first.pk)

        response = self.admin_client.get("/api/admin/withdrawals/?status=pending")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)

    def test_refund_order(self):
        item = make_item(coin_cost=40, inventory=3)
        order = self.client.post("/api/store/purchase/", {"item_id": item.pk}, format="json").data

        response = self.admin_client.post(f"/api/admin/orders/{order['id']}/refund/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], Order.Status.REFUNDED)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

    def test_quiz_reward(self):
        payload = {
            "quiz_id": "q-7",
            "score": 9,
            "total_points": 10,
            "rewards": {"participation": 5, "first_place": 20, "second_place": 10},
        }

        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/quiz-rewards/", payload, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["reward"], 25)
        self.assertEqual(response.data["entry"]["reference"], f"quiz_reward_q-7_{self.user.pk}")
        self.assertEqual(response.data["balance"], 225)

        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/quiz-rewards/", payload, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["created"])
        self.assertEqual(response.data["balance"], 225)

    def test_quiz_reward_score_above_total(self):
        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/quiz-rewards/",
            {"quiz_id": "q-7", "score": 11, "total_points": 10, "rewards": {}},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_quiz_reward_requires_admin(self):
        response = self.client.post(
            f"/api/admin/users/{self.user.pk}/quiz-rewards/",
            {"quiz_id": "q-7", "score": 10, "total_points": 10, "rewards": {"first_place": 50}},
            format="json",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(LedgerService.get_balance(self.user.pk), 200)

    def test_fraud_penalty_clamped_to_balance(self):
        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/penalties/",
            {"amount": 500, "reference": "case-12"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["entry"]["amount"], -200)
        self.assertEqual(response.data["balance"], 0)

        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/penalties/",
            {"amount": 500, "reference": "case-13"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.data["entry"])
        self.assertEqual(response.data["balance"], 0)

    def test_fraud_penalty_requires_reference(self):
        response = self.admin_client.post(
            f"/api/admin/users/{self.user.pk}/penalties/", {"amount": 5}, format="json"
        )
        self.assertEqual(response.status_code, 400)


# ============================================================
# Celery Task Tests
# ============================================================


class CeleryTaskTest(TestCase):
    def setUp(self):
        cache.clear()
        self.user = make_user("alice")
        fund(self.user, 50)

    def test_reconcile_reports_clean_ledger(self):
        result = reconcile_wallet_balances.apply()
        self.assertEqual(result.get(), {"drifted": []})

    def test_reconcile_reports_drift(self):
        Wallet.objects.filter(user=self.user).update(balance=75)

        result = reconcile_wallet_balances.apply()

        self.assertEqual(result.get()["drifted"], [str(self.user.wallet.uuid)])
        # Reporting never rewrites the balance.
        self.assertEqual(LedgerService.get_balance(self.user.pk), 75)

    def test_purge_expired_rate_limits(self):
        AbuseGuard.check_and_record("10.0.0.1", "vote")
        RateLimitBucket.objects.update(window_started_at=timezone.now() - timedelta(days=3))

        result = purge_expired_rate_limits.apply()

        self.assertEqual(result.get(), {"deleted": 1})
        self.assertFalse(RateLimitBucket.objects.exists())

    @patch("ledger.tasks.post_audit_event")
    def test_publish_ledger_event(self, mock_post):
        mock_post.return_value = {"success": True, "response": {"status": 204}}

        result = publish_ledger_event.apply(args=["ledger.entry_applied", {"amount": 5}])

        self.assertEqual(result.get()["delivered"], {"status": 204})
        mock_post.assert_called_once_with("ledger.entry_applied", {"amount": 5})

    @patch("ledger.tasks.post_audit_event")
    def test_publish_ledger_event_failure_asks_for_retry(self, mock_post):
        mock_post.return_value = {"success": False, "response": {"status": 502}}

        with self.assertRaises(Retry):
            publish_ledger_event("ledger.entry_applied", {"amount": 5})

    @patch("ledger.tasks.post_audit_event")
    def test_events_published_after_commit(self, mock_post):
        mock_post.return_value = {"success": True, "response": {"delivered": False}}

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            entry = LedgerService.apply_entry(
                self.user.pk, LedgerEntry.EntryType.QUIZ_REWARD, 5, "quiz_reward_9_1"
            )

        self.assertEqual(len(callbacks), 1)
        event, payload = mock_post.call_args[0]
        self.assertEqual(event, "ledger.entry_applied")
        self.assertEqual(payload["entry_id"], entry.pk)
        self.assertEqual(payload["balance_after"], 55)

    def test_failed_operation_publishes_nothing(self):
        with self.captureOnCommitCallbacks() as callbacks:
            with self.assertRaises(InsufficientFunds):
                LedgerService.apply_entry(
                    self.user.pk, LedgerEntry.EntryType.FRAUD_PENALTY, -500, "fraud_9"
                )

        self.assertEqual(callbacks, [])


# ============================================================
# Audit webhook
# ============================================================


@override_settings(AUDIT_WEBHOOK_URL="https://audit.example.test/hook", AUDIT_WEBHOOK_TIMEOUT=3)
class AuditWebhookTest(TestCase):
    @patch("ledger.utils.webhook.requests.post")
    def test_delivered(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)

        result = post_audit_event("withdrawal.approved", {"withdrawal_id": 1})

        self.assertTrue(result["success"])
        mock_post.assert_called_once_with(
            "https://audit.example.test/hook",
            json={"event": "withdrawal.approved", "payload": {"withdrawal_id": 1}},
            timeout=3,
        )

    @patch("ledger.utils.webhook.requests.post")
    def test_rejected(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=500, text="boom")

        result = post_audit_event("withdrawal.approved", {})

        self.assertFalse(result["success"])
        self.assertEqual(result["response"], {"status": 500})

    @patch("ledger.utils.webhook.requests.post")
    def test_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("read timed out")

        result = post_audit_event("withdrawal.approved", {})

        self.assertFalse(result["success"])
        self.assertEqual(result["response"]["error"], "timeout")

    @patch("ledger.utils.webhook.requests.post")
    def test_connection_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")

        result = post_audit_event("withdrawal.approved", {})

        self.assertEqual(result["response"]["error"], "request_error")

    @override_settings(AUDIT_WEBHOOK_URL="")
    @patch("ledger.utils.webhook.requests.post")
    def test_no_webhook_configured(self, mock_post):
        result = post_audit_event("withdrawal.approved", {})

        self.assertTrue(result["success"])
        mock_post.assert_not_called()


# ============================================================
# Configuration / request helpers
# ============================================================


class SettingsCacheTest(TestCase):
    def setUp(self):
        cache.clear()

    def test_default_when_missing(self):
        self.assertEqual(config.get_setting("missing", default=7), 7)

    def test_saving_in_admin_invalidates_cache(self):
        config.set_setting("referral_coin_reward", 5)
        self.assertEqual(config.referral_coin_reward(), 5)

        setting = Setting.objects.get(key="referral_coin_reward")
        setting.value = 9
        setting.save()
        self.assertEqual(config.referral_coin_reward(), 9)

        setting.delete()
        with self.settings(DEFAULT_REFERRAL_COIN_REWARD=2):
            self.assertEqual(config.referral_coin_reward(), 2)

    def test_direct_update_served_from_cache_until_invalidated(self):
        config.set_setting("referral_coin_reward", 5)
        self.assertEqual(config.referral_coin_reward(), 5)

        Setting.objects.filter(key="referral_coin_reward").update(value=8)
        self.assertEqual(config.referral_coin_reward(), 5)

        config.invalidate_setting("referral_coin_reward")
        self.assertEqual(config.referral_coin_reward(), 8)


class ClientAddressTest(TestCase):
    def setUp(self):
        self.factory = RequestFactory()

    def test_forwarded_for_ignored_without_trusted_proxy(self):
        request = self.factory.get(
            "/", REMOTE_ADDR="198.51.100.9", HTTP_X_FORWARDED_FOR="203.0.113.5"
        )
        self.assertEqual(client_ip(request), "198.51.100.9")

    def test_real_ip_header_ignored(self):
        request = self.factory.get("/", REMOTE_ADDR="198.51.100.9", HTTP_X_REAL_IP="203.0.113.6")
        self.assertEqual(client_ip(request), "198.51.100.9")

    @override_settings(TRUSTED_PROXY_COUNT=1)
    def test_rightmost_hop_behind_one_proxy(self):
        request = self.factory.get(
            "/", REMOTE_ADDR="10.0.0.1", HTTP_X_FORWARDED_FOR="6.6.6.6, 203.0.113.5"
        )
        self.assertEqual(client_ip(request), "203.0.113.5")

    @override_settings(TRUSTED_PROXY_COUNT=2)
    def test_hop_behind_two_proxies(self):
        request = self.factory.get(
            "/",
            REMOTE_ADDR="10.0.0.2",
            HTTP_X_FORWARDED_FOR="6.6.6.6, 203.0.113.5, 10.0.0.1",
        )
        self.assertEqual(client_ip(request), "203.0.113.5")

    @override_settings(TRUSTED_PROXY_COUNT=2)
    def test_short_forwarded_chain_falls_back_to_socket(self):
        request = self.factory.get(
            "/", REMOTE_ADDR="10.0.0.2", HTTP_X_FORWARDED_FOR="203.0.113.5"
        )
        self.assertEqual(client_ip(request), "10.0.0.2")

    def test_remote_addr(self):
        request = self.factory.get("/", REMOTE_ADDR="203.0.113.7")
        self.assertEqual(client_ip(request), "203.0.113.7")

    def test_unknown(self):
        request = self.factory.get("/", REMOTE_ADDR="")
        self.assertEqual(client_ip(request), "unknown")
