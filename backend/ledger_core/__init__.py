"""
Settlement Core Modules
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    round_whole,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_multiply,
    safe_add,
    safe_sum,
    calculate_commission_amount,
    FinancialPrecisionError,
    NegativeValueError
)

from .totals_recalculator import (
    extract_units_from_product_label,
    recompute_investor_totals,
    find_reconciliation_gaps
)

from .ledger_store import (
    LedgerStore,
    ConcurrentModificationError
)

from .asset_provisioning import (
    AssetProvisioner,
    ProvisioningContext
)

from .commission_calculator import (
    CommissionCalculator,
    AgentNotFoundError
)

from .stamping_client import (
    EStampClient,
    StampingProviderError
)

from .stamping_trigger import StampingTrigger

from .settlement_engine import (
    SettlementEngine,
    SettlementResult,
    SettlementError,
    PaymentNotFoundError,
    UnsupportedPaymentKindError,
    InvalidPaymentError,
    OrderIdCollisionError
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'round_whole',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_multiply',
    'safe_add',
    'safe_sum',
    'calculate_commission_amount',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Totals
    'extract_units_from_product_label',
    'recompute_investor_totals',
    'find_reconciliation_gaps',
    # Store
    'LedgerStore',
    'ConcurrentModificationError',
    # Provisioning / Commission / Stamping
    'AssetProvisioner',
    'ProvisioningContext',
    'CommissionCalculator',
    'AgentNotFoundError',
    'EStampClient',
    'StampingProviderError',
    'StampingTrigger',
    # Settlement
    'SettlementEngine',
    'SettlementResult',
    'SettlementError',
    'PaymentNotFoundError',
    'UnsupportedPaymentKindError',
    'InvalidPaymentError',
    'OrderIdCollisionError',
]
