from pydantic import BaseModel


class WithdrawalCreate(BaseModel):
    amount: int
    recipient_phone: str
    payment_method: str
    recipient_name: str | None = None
    notes: str | None = None


class WithdrawalItem(BaseModel):
    id: int
    agency_id: int
    amount: int
    recipient_phone: str
    recipient_name: str | None = None
    payment_method: str
    status: str
    notes: str | None = None
    payout_reference: str | None = None
    failure_reason: str | None = None
    created_at: str
    processed_at: str | None = None


class WithdrawalResponse(BaseModel):
    success: bool
    withdrawal: WithdrawalItem


class WithdrawalListResponse(BaseModel):
    success: bool
    withdrawals: list[WithdrawalItem] = []


class BalanceResponse(BaseModel):
    success: bool
    available_balance: int
    received_total: int
    pending_total: int
    pending_count: int
    processing_total: int
    completed_total: int
    total_requests: int


class RentPaymentCreate(BaseModel):
    agency_id: int
    amount: int
    external_reference: str
    tenant_id: int | None = None
    payment_method: str | None = None
    status: str = "completed"


class RentPaymentResponse(BaseModel):
    success: bool
    id: int
    status: str


class BatchProcessResponse(BaseModel):
    success: bool
    processed: int
    withdrawals: list[WithdrawalItem] = []
