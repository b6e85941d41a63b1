from app.models.plan import SubscriptionPlan
from app.models.subscription import AgencySubscription
from app.models.transaction import PaymentTransaction
from app.models.withdrawal import AgencyWallet, OnlineRentPayment, WithdrawalRequest

__all__ = [
    "SubscriptionPlan",
    "AgencySubscription",
    "PaymentTransaction",
    "OnlineRentPayment",
    "WithdrawalRequest",
    "AgencyWallet",
]
