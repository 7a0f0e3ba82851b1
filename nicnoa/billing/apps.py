from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles the Stripe catalog, checkout, subscription lifecycle and
    webhook reconciliation.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "nicnoa.billing"

    def ready(self):
        """
        Build the process-wide Stripe gateway and register webhook handlers.

        Services receive the gateway explicitly; ``get_gateway`` only exists
        for callers that have nothing to inject.
        """
        from nicnoa.billing import webhooks  # noqa: F401
        from nicnoa.billing.gateway import StripeGateway

        self.gateway = StripeGateway.from_settings()
