"""
Shared constants for subscription webhook processing.
"""

# Subscription statuses that count as "active" for notifications and status records
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"trialing", "active", "past_due"})

# Stripe event types with a handler
EVENT_CUSTOMER_CREATED = "customer.created"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_SOURCE_EXPIRING = "customer.source.expiring"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Invoice billing reasons
# Only subscription_create is treated as the initial invoice of a new subscription.
BILLING_REASON_SUBSCRIPTION_CREATE = "subscription_create"

# Subscription metadata marker set when we cancel on the customer's behalf
CANCELLED_FOR_CUSTOMER_AT = "cancelled_for_customer_at"

# Plan/product metadata capability keys
CAPABILITY_KEY = "capabilities"
CAPABILITY_KEY_PREFIX = "capabilities:"

# Update sub-types for customer.subscription.updated emails
UPDATE_TYPE_UPGRADE = "upgrade"
UPDATE_TYPE_DOWNGRADE = "downgrade"
UPDATE_TYPE_REACTIVATION = "reactivation"
UPDATE_TYPE_CANCELLATION = "cancellation"

# Billing interval ordering, shortest first
INTERVAL_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}

# Email templates (SES template names are prefixed per environment)
TEMPLATE_UPGRADE = "subscription_upgrade"
TEMPLATE_DOWNGRADE = "subscription_downgrade"
TEMPLATE_REACTIVATION = "subscription_reactivation"
TEMPLATE_CANCELLATION = "subscription_cancellation"
TEMPLATE_ACCOUNT_DELETION = "subscription_account_deletion"
TEMPLATE_PAYMENT_FAILED = "subscription_payment_failed"
TEMPLATE_FIRST_INVOICE = "subscription_first_invoice"
TEMPLATE_SUBSEQUENT_INVOICE = "subscription_subsequent_invoice"
TEMPLATE_DOWNLOAD = "download_subscription"
TEMPLATE_PAYMENT_EXPIRED = "subscription_payment_expired"
TEMPLATE_MULTI_PAYMENT_EXPIRED = "multi_subscriptions_payment_expired"

UPDATE_TYPE_TEMPLATES = {
    UPDATE_TYPE_UPGRADE: TEMPLATE_UPGRADE,
    UPDATE_TYPE_DOWNGRADE: TEMPLATE_DOWNGRADE,
    UPDATE_TYPE_REACTIVATION: TEMPLATE_REACTIVATION,
    UPDATE_TYPE_CANCELLATION: TEMPLATE_CANCELLATION,
}

# Downstream topics
TOPIC_SUBSCRIPTION_UPDATE = "subscription:update"
TOPIC_PROFILE_DATA_CHANGED = "profileDataChanged"

# Timeouts
DEFAULT_COLLABORATOR_TIMEOUT = 10.0
