"""Models package."""

from .user import User
from .wallet import Wallet, SubscriptionTier
from .credit_record import CreditRecord, CreditRecordType, CreditPool
from .order import Order
from .referral import Referral
