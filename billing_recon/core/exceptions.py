class BillingReconError(Exception):
    """Base exception for the billing reconciliation service."""

    http_status: int = 500


class InvalidSignature(BillingReconError):
    """Raised when a webhook payload fails signature verification."""

    http_status = 400


class NoActiveSubscription(BillingReconError):
    """Raised when a user has no membership subscription to change or cancel."""

    http_status = 400


class SamePlanRequested(BillingReconError):
    """Raised when the requested plan equals the user's current plan."""

    http_status = 400

    def __init__(self, plan_type: str):
        self.plan_type = plan_type
        super().__init__(f"Already subscribed to plan '{plan_type}'")


class SubscriptionNotActive(BillingReconError):
    """Raised when the processor reports the subscription in a non-active status."""

    http_status = 409

    def __init__(self, subscription_id: str, status: str | None):
        self.subscription_id = subscription_id
        self.status = status
        super().__init__(f"Subscription '{subscription_id}' is not active (status: {status})")


class UnknownPlanType(BillingReconError):
    """Raised when a plan identifier is not in the membership catalog."""

    http_status = 422

    def __init__(self, plan_type: str):
        self.plan_type = plan_type
        super().__init__(f"Unknown plan type '{plan_type}'")


class ProcessorUnavailable(BillingReconError):
    """Raised when the payment processor fails transiently or times out."""

    http_status = 503

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Payment processor unavailable during '{operation}'{detail}")


class ProcessorRejected(BillingReconError):
    """Raised when the payment processor refuses a request that a retry would not fix."""

    http_status = 502

    def __init__(self, operation: str, code: str | None = None):
        self.operation = operation
        self.code = code
        reason = f" ({code})" if code else ""
        super().__init__(f"Payment processor rejected '{operation}'{reason}")


class WebhookNotConfigured(BillingReconError):
    """Raised when no webhook signing secret is configured."""

    http_status = 503
