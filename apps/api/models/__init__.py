"""Models package."""

from .user import UserProfile
from .credit_transaction import CreditTransaction
from .payment import Payment
from .coupon import Coupon
from .coupon_usage import CouponUsage
from .stripe_webhook_event import StripeWebhookEvent
from .failed_credit_grant import FailedCreditGrant
from .security_log import SecurityLog
from .ip_blacklist import IPBlacklist
