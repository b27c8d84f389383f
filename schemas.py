from datetime import date, datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import BillFrequency, DebtStatus, InvestmentType, TransactionType


class TransactionIn(BaseModel):
    amount: float = Field(..., gt=0)
    type: TransactionType = TransactionType.expense
    category_id: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=100)
    occurred_at: Optional[datetime] = None
    description: str = Field(default="", max_length=200)
    merchant_name: Optional[str] = Field(default=None, max_length=120)
    payment_method: Optional[str] = Field(default="cash", max_length=40)
    is_verified: bool = True


class TransactionUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=100)
    occurred_at: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=200)
    merchant_name: Optional[str] = Field(default=None, max_length=120)
    payment_method: Optional[str] = Field(default=None, max_length=40)


class BudgetIn(BaseModel):
    category_id: int
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    amount: float = Field(..., ge=0)


class BudgetUpdate(BaseModel):
    amount: float = Field(..., ge=0)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount: float = Field(..., ge=0)
    current_amount: float = Field(default=0, ge=0)
    deadline: Optional[date] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount: Optional[float] = Field(default=None, ge=0)
    current_amount: Optional[float] = Field(default=None, ge=0)
    deadline: Optional[date] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class GoalFundsIn(BaseModel):
    amount: float = Field(..., gt=0)


class BillIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: float = Field(..., ge=0)
    category_id: Optional[int] = None
    due_day: int = Field(default=1, ge=1, le=31)
    frequency: BillFrequency = BillFrequency.monthly
    is_active: bool = True
    notes: Optional[str] = None


class BillUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[float] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    frequency: Optional[BillFrequency] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class BillPayIn(BaseModel):
    record_transaction: bool = True


class InvestmentIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: InvestmentType = InvestmentType.other
    quantity: float = Field(..., ge=0)
    avg_buy_price: float = Field(..., ge=0)
    current_price: Optional[float] = Field(default=None, ge=0)
    platform: Optional[str] = Field(default=None, max_length=80)
    notes: Optional[str] = None


class InvestmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[InvestmentType] = None
    quantity: Optional[float] = Field(default=None, ge=0)
    avg_buy_price: Optional[float] = Field(default=None, ge=0)
    current_price: Optional[float] = Field(default=None, ge=0)
    platform: Optional[str] = Field(default=None, max_length=80)
    notes: Optional[str] = None


class DebtIn(BaseModel):
    counterpart_name: str = Field(..., min_length=1, max_length=120)
    amount: float
    description: Optional[str] = None
    due_date: Optional[date] = None

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: float) -> float:
        if value == 0:
            raise ValueError("Debt amount cannot be zero")
        return value


class DebtUpdate(BaseModel):
    counterpart_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[float] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[DebtStatus] = None


class SettingsIn(BaseModel):
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    primary_goal_id: Optional[int] = None
    security_pin: Optional[str] = Field(default=None, min_length=4, max_length=12)
    is_app_lock_enabled: Optional[bool] = None


class RegisterIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=1, max_length=120)


class LinkMessagingIn(BaseModel):
    messaging_id: int


class ToolCallIn(BaseModel):
    tool_name: str = Field(..., min_length=1, max_length=60)
    arguments: Union[dict[str, Any], str] = Field(default_factory=dict)


class IntentRecord(BaseModel):
    """Best-effort output of the extraction service; every field may be missing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    intent: Literal["transaction", "query", "debt"] = "query"
    amount: Optional[float] = None
    description: Optional[str] = None
    category: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    debtor_name: Optional[str] = None


# Tool-call arguments. The assistant emits camelCase keys; snake_case is
# accepted too so web callers can reuse the same models.


class ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordTransactionArgs(ToolArgs):
    amount: float = Field(..., gt=0)
    description: str = Field(default="", max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    type: TransactionType = TransactionType.expense
    occurred_at: Optional[datetime] = None
    merchant_name: Optional[str] = Field(default=None, max_length=120)
    payment_method: Optional[str] = Field(default="cash", max_length=40)


class UpdateTransactionArgs(ToolArgs):
    id: int
    amount: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    type: Optional[TransactionType] = None


class IdArgs(ToolArgs):
    id: int


class CreateBudgetArgs(ToolArgs):
    category: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., ge=0)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)


class UpdateBudgetArgs(ToolArgs):
    id: int
    amount: float = Field(..., ge=0)


class CreateGoalArgs(ToolArgs):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount: float = Field(..., gt=0)
    deadline: Optional[date] = None
    icon: Optional[str] = Field(default=None, max_length=40)


class UpdateGoalArgs(ToolArgs):
    id: int
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount: Optional[float] = Field(default=None, ge=0)
    current_amount: Optional[float] = Field(default=None, ge=0)
    deadline: Optional[date] = None
    icon: Optional[str] = Field(default=None, max_length=40)


class AddGoalFundsArgs(ToolArgs):
    goal_id: int
    amount: float = Field(..., gt=0)


class ReallocateGoalFundsArgs(ToolArgs):
    from_goal_id: int
    target: Literal["goal", "balance"]
    to_goal_id: Optional[int] = None
    amount: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _destination_present(self) -> "ReallocateGoalFundsArgs":
        if self.target == "goal" and self.to_goal_id is None:
            raise ValueError("toGoalId is required when target is 'goal'")
        if self.target == "goal" and self.to_goal_id == self.from_goal_id:
            raise ValueError("Source and destination goal must differ")
        return self


class CreateBillArgs(ToolArgs):
    name: str = Field(..., min_length=1, max_length=120)
    amount: float = Field(..., ge=0)
    due_date: int = Field(default=1, ge=1, le=31)
    frequency: BillFrequency = BillFrequency.monthly
    category: Optional[str] = Field(default=None, max_length=100)


class UpdateBillArgs(ToolArgs):
    id: int
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[float] = Field(default=None, ge=0)
    due_date: Optional[int] = Field(default=None, ge=1, le=31)
    frequency: Optional[BillFrequency] = None


class MarkBillPaidArgs(ToolArgs):
    id: int
    record_transaction: bool = True


class CreateInvestmentArgs(ToolArgs):
    name: str = Field(..., min_length=1, max_length=120)
    quantity: float = Field(..., gt=0)
    avg_buy_price: float = Field(..., ge=0)
    current_price: Optional[float] = Field(default=None, ge=0)
    type: InvestmentType = InvestmentType.other
    platform: Optional[str] = Field(default=None, max_length=80)


class UpdateInvestmentArgs(ToolArgs):
    id: int
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    quantity: Optional[float] = Field(default=None, ge=0)
    avg_buy_price: Optional[float] = Field(default=None, ge=0)
    current_price: Optional[float] = Field(default=None, ge=0)
    platform: Optional[str] = Field(default=None, max_length=80)


class RecordDebtArgs(ToolArgs):
    debtor_name: str = Field(..., min_length=1, max_length=120)
    amount: float
    description: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: float) -> float:
        if value == 0:
            raise ValueError("Debt amount cannot be zero")
        return value
