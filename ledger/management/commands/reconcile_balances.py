from django.core.management.base import BaseCommand
from django.db import transaction

from ledger.models import Wallet
from ledger.services import LedgerService


class Command(BaseCommand):
    help = "Checks every wallet balance against the sum of its ledger entries"

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Rebuild drifted balances from the ledger entries.",
        )

    def handle(self, *args, **options):
        drifted = list(LedgerService.find_drift())
        if not drifted:
            self.stdout.write(self.style.SUCCESS("All wallet balances match the ledger."))
            return

        for wallet in drifted:
            self.stdout.write(
                self.style.WARNING(
                    f"Wallet {wallet.uuid}: balance={wallet.balance} "
                    f"ledger_sum={wallet.ledger_sum}"
                )
            )
            if options["fix"]:
                self._rebuild(wallet.pk)

        if options["fix"]:
            self.stdout.write(self.style.SUCCESS(f"Rebuilt {len(drifted)} wallet balance(s)."))
        else:
            self.stdout.write(f"{len(drifted)} wallet(s) drifted. Re-run with --fix to rebuild.")

    @transaction.atomic
    def _rebuild(self, wallet_pk):
        wallet = Wallet.objects.select_for_update().get(pk=wallet_pk)
        ledger_sum = LedgerService.ledger_sum(wallet)
        if ledger_sum < 0:
            self.stdout.write(
                self.style.ERROR(f"Wallet {wallet.uuid}: negative ledger sum, left untouched.")
            )
            return
        wallet.balance = ledger_sum
        wallet.save(update_fields=["balance", "updated_at"])
