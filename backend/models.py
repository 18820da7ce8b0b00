from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from bson import ObjectId

# ============================================
# ENUMS
# ============================================
class PaymentKind(str, Enum):
    FULL = "full"
    INSTALLMENT = "installment"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class PaymentTermPeriod(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"

class InvestmentStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"

class InstallmentStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"

class ProvisioningStatus(str, Enum):
    NEW_CONTRACT = "New Contract"
    PENDING_CONTRACT = "Pending Contract"

class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PERMANENTLY_REJECTED = "permanently_rejected"

# ============================================
# PAYMENT MODEL
# ============================================
class Payment(BaseModel):
    payment_id: Optional[str] = Field(default=None, alias="_id")
    order_id: str
    user_id: str
    amount: float
    currency: str = "IDR"
    kind: PaymentKind
    payment_method: Optional[str] = None
    chain_id: Optional[str] = None  # Parent contract order id (installments)
    installment_number: Optional[int] = None  # 1-based
    total_installments: Optional[int] = None
    installment_amount: Optional[float] = None
    payment_term: Optional[PaymentTermPeriod] = None
    due_date: Optional[datetime] = None
    product_ref: Optional[str] = None  # Product label, e.g. "Gaharu 10 Pohon"
    product_id: Optional[str] = None
    referral_code: Optional[str] = None
    proof_ref: Optional[str] = None
    processed: bool = False
    status: PaymentStatus = PaymentStatus.PENDING
    settlement_time: Optional[datetime] = None
    admin_review_date: Optional[datetime] = None
    settlement_result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_encoders = {ObjectId: str}

# ============================================
# INVESTOR LEDGER MODELS
# ============================================
class Installment(BaseModel):
    number: int
    amount: float
    due_date: Optional[datetime] = None
    is_paid: bool = False
    paid_date: Optional[datetime] = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    proof_ref: Optional[str] = None
    order_id: Optional[str] = None

    class Config:
        use_enum_values = True

class Investment(BaseModel):
    investment_id: str  # Contract / chain id, unique within the investor
    product_ref: Optional[str] = None
    asset_ref: Optional[str] = None
    total_amount: float
    amount_paid: float = 0.0
    kind: PaymentKind
    status: InvestmentStatus = InvestmentStatus.PENDING
    installments: List[Installment] = Field(default_factory=list)
    investment_date: datetime = Field(default_factory=lambda: datetime.utcnow())
    completion_date: Optional[datetime] = None

    class Config:
        use_enum_values = True

class Investor(BaseModel):
    investor_id: Optional[str] = Field(default=None, alias="_id")
    user_id: str
    name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    status: str = "active"
    investments: List[Investment] = Field(default_factory=list)
    total_capital: float = 0.0  # Derived: SUM(investments.total_amount)
    total_paid_in: float = 0.0  # Derived: SUM(investments.amount_paid)
    asset_count: int = 0  # Derived: SUM(units per product label)
    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_encoders = {ObjectId: str}

# ============================================
# ASSET INSTANCE MODEL
# ============================================
class AssetHistoryEntry(BaseModel):
    id: str
    action: str
    type: str
    date: str
    description: str
    added_by: str

class AssetInstance(BaseModel):
    asset_id: Optional[str] = Field(default=None, alias="_id")
    instance_id: str
    contract_ref: str  # Unique: one asset per contract
    owner_ref: str
    owner_name: str
    asset_category: str
    instance_name: str
    base_annual_roi: float
    qr_code: str
    location: str
    plot: str = "-"
    block: str = "-"
    provisioning_status: ProvisioningStatus
    approval_status: str = "approved"
    operational_costs: List[Dict[str, Any]] = Field(default_factory=list)
    income_records: List[Dict[str, Any]] = Field(default_factory=list)
    history: List[AssetHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_encoders = {ObjectId: str}

# ============================================
# COMMISSION MODEL
# ============================================
class CommissionEntry(BaseModel):
    commission_id: Optional[str] = Field(default=None, alias="_id")
    payment_ref: str  # Unique: at most one entry per payment
    agent_ref: str
    agent_name: str
    referral_code: str
    customer_ref: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    contract_ref: Optional[str] = None
    product_ref: Optional[str] = None
    base_amount: float
    rate: float
    commission_amount: float
    payment_kind: PaymentKind
    installment_details: Optional[Dict[str, Any]] = None
    earned_at: datetime
    calculated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_encoders = {ObjectId: str}

# ============================================
# CONTRACT STAMP STATE
# ============================================
class ContractStampState(BaseModel):
    stamped: bool = False
    stamp_ref: Optional[str] = None
    stamp_uuid: Optional[str] = None
    stamped_at: Optional[datetime] = None

# ============================================
# API RESPONSES
# ============================================
class SettlementResponse(BaseModel):
    order_id: str
    asset_created: bool
    investor_updated: bool
    next_installment_created: Optional[str] = None
    commission_posted: Optional[str] = None
    stamped: Optional[str] = None
    already_processed: bool = False
    warnings: List[str] = Field(default_factory=list)

class StampResponse(BaseModel):
    contract_id: str
    stamped: bool
    stamp_ref: Optional[str] = None

class CommissionBackfillResponse(BaseModel):
    agent_id: str
    commissions_created: int
    total_commission: float
    errors: List[str] = Field(default_factory=list)
