"""
Management command to sync the local catalog to Stripe.

Creates missing Stripe Products and Prices for plans and credit packages.
Safe to run repeatedly: existing references are never recreated.

Usage:
    python manage.py sync_stripe_catalog --status        # What needs a sync
    python manage.py sync_stripe_catalog --plan 3        # One plan
    python manage.py sync_stripe_catalog --package 2     # One credit package
    python manage.py sync_stripe_catalog --all           # Everything active
"""

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.constants import BillingInterval
from nicnoa.billing.exceptions import BillingError


class Command(BaseCommand):
    help = "Create missing Stripe Products and Prices for plans and credit packages"

    def add_arguments(self, parser):
        parser.add_argument("--plan", type=int, help="Sync the plan with this ID")
        parser.add_argument("--package", type=int, help="Sync the credit package with this ID")
        parser.add_argument(
            "--all",
            action="store_true",
            help="Sync every active plan and package that needs it",
        )
        parser.add_argument(
            "--status",
            action="store_true",
            help="Show which plans and packages need a sync and exit",
        )

    def handle(self, *args, **options):
        synchronizer = CatalogSynchronizer()

        if options["status"]:
            self._show_status(synchronizer)
            return

        if not (options["plan"] or options["package"] or options["all"]):
            msg = "Pass --plan, --package, --all or --status"
            raise CommandError(msg)

        try:
            if options["plan"]:
                plan = synchronizer.sync_plan(options["plan"])
                self.stdout.write(self.style.SUCCESS(f"Synced plan {plan.name}"))
                for interval in BillingInterval:
                    self.stdout.write(f"  {interval.label}: {plan.price_ref(interval)}")
            if options["package"]:
                package = synchronizer.sync_credit_package(options["package"])
                self.stdout.write(
                    self.style.SUCCESS(
                        f"Synced package {package.name}: {package.stripe_price_id}",
                    ),
                )
        except BillingError as e:
            raise CommandError(str(e)) from e

        if options["all"]:
            results = synchronizer.sync_all()
            failed = [r for r in results if not r.success]
            for result in results:
                if result.success:
                    self.stdout.write(self.style.SUCCESS(f"  {result.kind} {result.name}: ✓"))
                else:
                    self.stdout.write(
                        self.style.ERROR(f"  {result.kind} {result.name}: ✗ {result.error}"),
                    )
            if failed:
                msg = f"{len(failed)} of {len(results)} item(s) failed to sync"
                raise CommandError(msg)
            self.stdout.write(self.style.SUCCESS(f"Synced {len(results)} item(s)"))

    def _show_status(self, synchronizer: CatalogSynchronizer):
        status = synchronizer.sync_status()
        for item in (*status.plans, *status.packages):
            flag = "needs sync" if item.needs_sync else "synced"
            active = "" if item.is_active else " (inactive)"
            self.stdout.write(f"  {item.kind} {item.item_id} {item.name}{active}: {flag}")
        self.stdout.write(
            f"\n{status.synced_count} synced, {status.needs_sync_count} need a sync",
        )
