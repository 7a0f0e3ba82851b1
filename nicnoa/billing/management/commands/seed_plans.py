"""
Management command to seed subscription plans and credit packages.

Creates or updates the four pricing plans (two for stylists, two for salon
owners) and the credit packages, then optionally creates the matching
Stripe Products and Prices.

Prices that are already synced to Stripe are never changed: ``--force``
updates descriptions, features and display settings, and reports plans
whose price would have to change (create a new plan for that instead).

Usage:
    python manage.py seed_plans              # Create missing plans and packages
    python manage.py seed_plans --force      # Also update existing rows
    python manage.py seed_plans --sync       # Then sync everything to Stripe
"""

from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand

from nicnoa.billing.catalog import CatalogSynchronizer
from nicnoa.billing.constants import PlanType
from nicnoa.billing.models import CreditPackage
from nicnoa.billing.models import Plan

PLAN_CONFIG = {
    "stylist-starter": {
        "name": "Starter",
        "description": "Perfekt für den Einstieg in die Selbstständigkeit",
        "plan_type": PlanType.STYLIST,
        "price_monthly": Decimal("29.00"),
        "price_quarterly": Decimal("79.00"),
        "price_six_months": Decimal("149.00"),
        "price_yearly": Decimal("290.00"),
        "features": [
            "Einfacher Buchungskalender",
            "Kundenverwaltung (bis 100 Kunden)",
            "Automatische Terminerinnerungen",
            "Basis-Umsatzübersicht",
            "E-Mail Support",
        ],
        "is_popular": False,
        "trial_days": 14,
        "sort_order": 1,
        "included_credits": 5,
    },
    "stylist-professional": {
        "name": "Professional",
        "description": "Für etablierte Stylisten mit wachsendem Kundenstamm",
        "plan_type": PlanType.STYLIST,
        "price_monthly": Decimal("49.00"),
        "price_quarterly": Decimal("129.00"),
        "price_six_months": Decimal("249.00"),
        "price_yearly": Decimal("470.00"),
        "features": [
            "Alles aus Starter",
            "Detaillierte Auswertungen & Analytics",
            "Social Media Management",
            "Unbegrenzte Kundenverwaltung",
            "Online-Zahlungen",
            "Homepage-Builder mit KI",
            "Prioritäts-Support",
        ],
        "is_popular": True,
        "trial_days": 14,
        "sort_order": 2,
        "included_credits": 15,
    },
    "salon-basic": {
        "name": "Basic",
        "description": "Ideal für kleine Salons mit 1-3 Stühlen",
        "plan_type": PlanType.SALON_OWNER,
        "price_monthly": Decimal("79.00"),
        "price_quarterly": Decimal("209.00"),
        "price_six_months": Decimal("399.00"),
        "price_yearly": Decimal("790.00"),
        "features": [
            "Bis zu 3 Stuhlmieter",
            "Zentrales Buchungssystem",
            "Digitale Mietverträge",
            "Automatische Mietabrechnung",
            "Basis-Reporting",
            "E-Mail Support",
        ],
        "is_popular": False,
        "trial_days": 14,
        "sort_order": 1,
        "included_credits": 10,
    },
    "salon-business": {
        "name": "Business",
        "description": "Für wachsende Salons mit Ambition",
        "plan_type": PlanType.SALON_OWNER,
        "price_monthly": Decimal("149.00"),
        "price_quarterly": Decimal("399.00"),
        "price_six_months": Decimal("749.00"),
        "price_yearly": Decimal("1490.00"),
        "features": [
            "Alles aus Basic",
            "Unbegrenzte Stuhlmieter",
            "Umsatz-Dashboard",
            "Zahlungsabwicklung inkl. SEPA",
            "Multi-Standort Support",
            "24/7 Premium Support",
        ],
        "is_popular": True,
        "trial_days": 14,
        "sort_order": 2,
        "included_credits": 25,
    },
}

# Keyed by name; packages have no slug
PACKAGE_CONFIG = {
    "Credits S": {
        "credits": 100,
        "bonus_credits": 20,
        "price_eur": Decimal("9.99"),
        "sort_order": 1,
    },
    "Credits M": {
        "credits": 500,
        "bonus_credits": 125,
        "price_eur": Decimal("39.99"),
        "sort_order": 2,
    },
    "Credits L": {
        "credits": 1000,
        "bonus_credits": 300,
        "price_eur": Decimal("69.99"),
        "sort_order": 3,
    },
}


class Command(BaseCommand):
    help = "Seed subscription plans and credit packages, optionally sync to Stripe"

    def add_arguments(self, parser):
        parser.add_argument(
            "--force",
            action="store_true",
            help="Update existing plans and packages with the latest configuration",
        )
        parser.add_argument(
            "--sync",
            action="store_true",
            help="Create missing Stripe Products and Prices afterwards",
        )

    def handle(self, *args, **options):
        self._seed_plans(force_update=options["force"])
        self._seed_packages(force_update=options["force"])

        if options["sync"]:
            self._sync()

        self._show_summary()

    def _seed_plans(self, force_update: bool):
        """Create or update Plan records."""
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Step 1: Seeding Plans")
        self.stdout.write("=" * 60)

        for slug, config in PLAN_CONFIG.items():
            plan, created = Plan.objects.get_or_create(slug=slug, defaults=config)
            if created:
                self.stdout.write(self.style.SUCCESS(f"  Created: {plan.name}"))
            elif force_update:
                self._update(plan, config)
            else:
                self.stdout.write(f"  Exists: {plan.name} (use --force to update)")

    def _seed_packages(self, force_update: bool):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Step 2: Seeding Credit Packages")
        self.stdout.write("=" * 60)

        for name, config in PACKAGE_CONFIG.items():
            package, created = CreditPackage.objects.get_or_create(
                name=name,
                defaults=config,
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f"  Created: {package.name}"))
            elif force_update:
                self._update(package, config)
            else:
                self.stdout.write(f"  Exists: {package.name} (use --force to update)")

    def _update(self, obj, config: dict):
        for field, value in config.items():
            setattr(obj, field, value)
        try:
            obj.save()
        except ValidationError as e:
            self.stdout.write(
                self.style.WARNING(f"  Skipped: {obj} ({'; '.join(e.messages)})"),
            )
        else:
            self.stdout.write(self.style.SUCCESS(f"  Updated: {obj}"))

    def _sync(self):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Step 3: Syncing to Stripe")
        self.stdout.write("=" * 60)

        results = CatalogSynchronizer().sync_all()
        if not results:
            self.stdout.write("  Everything already synced ✓")
        for result in results:
            if result.success:
                self.stdout.write(self.style.SUCCESS(f"  {result.name}: synced ✓"))
            else:
                self.stdout.write(
                    self.style.ERROR(f"  {result.name}: ✗ {result.error}"),
                )

    def _show_summary(self):
        """Show final summary of all plans and packages."""
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Summary")
        self.stdout.write("=" * 60)

        for plan in Plan.objects.all():
            stripe = "✗" if plan.needs_sync else "✓"
            self.stdout.write(
                f"  {plan.get_plan_type_display()} {plan.name}: "
                f"€{plan.price_monthly}/mo, €{plan.price_yearly}/yr, Stripe: {stripe}",
            )
        for package in CreditPackage.objects.all():
            stripe = "✗" if package.needs_sync else "✓"
            self.stdout.write(
                f"  {package.name}: {package.total_credits} credits for "
                f"€{package.price_eur}, Stripe: {stripe}",
            )

        missing = [p.name for p in Plan.objects.active() if p.needs_sync]
        if missing:
            self.stdout.write("")
            self.stdout.write(
                self.style.WARNING(
                    f"Warning: {', '.join(missing)} not synced to Stripe.\n"
                    "Users cannot subscribe until synced (run with --sync).",
                ),
            )

        self.stdout.write(self.style.SUCCESS("\nDone!"))
