from pydantic import BaseModel, Field


class PlanItem(BaseModel):
    id: int
    name: str
    description: str | None = None
    price_monthly: int
    price_yearly: int
    billing_currency: str


class PlanListResponse(BaseModel):
    success: bool
    plans: list[PlanItem] = []


class SubscriptionResponse(BaseModel):
    success: bool
    active: bool = False
    plan_id: int | None = None
    plan_name: str | None = None
    billing_cycle: str | None = None
    status: str | None = None
    starts_at: str | None = None
    ends_at: str | None = None


class ProrationPreviewRequest(BaseModel):
    plan_id: int
    billing_cycle: str = "monthly"


class ProrationDetail(BaseModel):
    remaining_days: int
    total_days: int
    remaining_percentage: float
    current_plan_credit: int
    new_plan_prorata_cost: int
    amount_due: int
    is_credit: bool
    display_amount: str
    summary: str


class ProrationPreviewResponse(BaseModel):
    success: bool
    full_amount: int
    amount_due: int
    currency: str
    proration: ProrationDetail | None = None


class CheckoutRequestBody(BaseModel):
    plan_id: int
    billing_cycle: str = "monthly"
    payment_method: str
    customer_phone: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    return_url: str | None = None
    country_code: str | None = None
    # shown to the user by the front end; recomputed server-side
    proration: dict | None = Field(default=None, exclude=True)


class CheckoutResponse(BaseModel):
    success: bool
    outcome: str
    amount: int
    transaction_id: int | None = None
    redirect_url: str | None = None
    external_reference: str | None = None
    credit_amount: int = 0
    message: str | None = None
    proration: ProrationDetail | None = None


class TransactionItem(BaseModel):
    id: int
    plan_id: int
    billing_cycle: str
    amount: int
    currency: str
    payment_method: str
    provider_name: str
    status: str
    external_reference: str | None = None
    is_prorated: bool = False
    proration_credit: int | None = None
    error_message: str | None = None
    created_at: str
    completed_at: str | None = None


class TransactionListResponse(BaseModel):
    success: bool
    transactions: list[TransactionItem] = []


class RefundResponse(BaseModel):
    success: bool
    transaction_id: int
    status: str
