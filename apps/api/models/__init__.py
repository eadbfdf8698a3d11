"""Models package."""

from .credit_account import CreditAccount
from .credit_ledger import CreditLedger
from .subscription_event import SubscriptionEventRecord
