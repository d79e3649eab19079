"""
VendorTal Billing Errors

Exception taxonomy for the billing service. Quota denials are not errors:
the enforcement gate returns a result with allowed=False instead.
"""


class BillingError(Exception):
    """Base class for billing errors."""


class CatalogIntegrityError(BillingError):
    """The plan catalog is malformed (duplicate id, inheritance cycle, dangling reference).

    Raised while the catalog loads. The process must not start serving with
    a broken catalog.
    """


class PlanNotFound(BillingError):
    def __init__(self, plan_id: str):
        super().__init__(f'Unknown plan: {plan_id}')
        self.plan_id = plan_id


class EntitlementResolutionError(BillingError):
    """A subscription references a plan or add-on the catalog does not know."""

    def __init__(self, plan_id: str, role: str = 'plan'):
        super().__init__(f'Cannot resolve {role} {plan_id!r}')
        self.plan_id = plan_id
        self.role = role


class WebhookVerificationError(BillingError):
    """Webhook payload failed signature verification or could not be parsed."""


class UnknownSubscriptionReference(BillingError):
    def __init__(self, reference: str):
        super().__init__(f'Unknown subscription reference: {reference}')
        self.reference = reference


class InvalidTransition(BillingError):
    def __init__(self, current: str, target: str):
        super().__init__(f'Invalid subscription transition {current} -> {target}')
        self.current = current
        self.target = target


class PaymentProcessorError(BillingError):
    """The payment processor rejected a request (validation, auth, ...)."""

    retryable = False


class PaymentProcessorUnavailable(PaymentProcessorError):
    """Network failure, rate limit or 5xx from the payment processor. Safe to retry."""

    retryable = True


class PlanNotPurchasable(BillingError):
    """The plan has no self-service price (free tier or contact-sales pricing)."""

    def __init__(self, plan_id: str, contact_sales: bool = False):
        reason = 'requires a sales contact' if contact_sales else 'has no purchasable price'
        super().__init__(f'Plan {plan_id} {reason}')
        self.plan_id = plan_id
        self.contact_sales = contact_sales


class BillingAccountNotFound(BillingError):
    def __init__(self, tenant_id: str):
        super().__init__(f'No billing account for tenant {tenant_id}')
        self.tenant_id = tenant_id


class SubscriptionExists(BillingError):
    """The tenant already has a live subscription; change it instead of starting a new checkout."""

    def __init__(self, tenant_id: str, stripe_subscription_id: str):
        super().__init__(f'Tenant {tenant_id} already has subscription {stripe_subscription_id}')
        self.tenant_id = tenant_id
        self.stripe_subscription_id = stripe_subscription_id
