"""Models package."""

from .user import User
from .credit_balance import CreditBalance
from .credit_transaction import CreditTransaction
from .webhook_event import WebhookEvent
from .payment_log import PaymentLog
from .payment_customer import PaymentCustomer
from .rate_limit_config import RateLimitConfig
from .rate_tracking import RateTracking
from .referral import Referral
from .usage_record import UsageRecord
