"""
Lifecycle Engine Core Modules
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    calculate_percentage,
    convert_currency,
    split_withholding,
    calculate_order_totals,
    calculate_valuation_values,
    FinancialPrecisionError,
    NegativeValueError,
    CurrencyConversionError
)

from .errors import (
    LifecycleError,
    InvalidRequestError,
    InvalidTransitionError,
    GuardConditionError,
    ConflictError,
    NotFoundError,
    ForbiddenError,
    InvariantViolationError
)

from .entities import (
    EntityKind,
    parse_kind
)

from .state_machine import (
    StateMachine,
    StateMachineRegistry,
    StateMachineError
)

from .state_registry import (
    state_registry,
    machine_for,
    is_valid_rollback,
    field_resets_for,
    can_transition,
    is_terminal
)

from .invariant_validator import FinancialInvariantValidator

from .dependency_resolver import DependencyResolver

from .recalculation_engine import RecalculationEngine

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'calculate_percentage',
    'convert_currency',
    'split_withholding',
    'calculate_order_totals',
    'calculate_valuation_values',
    'FinancialPrecisionError',
    'NegativeValueError',
    'CurrencyConversionError',
    # Errors
    'LifecycleError',
    'InvalidRequestError',
    'InvalidTransitionError',
    'GuardConditionError',
    'ConflictError',
    'NotFoundError',
    'ForbiddenError',
    'InvariantViolationError',
    # Entities
    'EntityKind',
    'parse_kind',
    # State Registry
    'StateMachine',
    'StateMachineRegistry',
    'StateMachineError',
    'state_registry',
    'machine_for',
    'is_valid_rollback',
    'field_resets_for',
    'can_transition',
    'is_terminal',
    # Engines
    'FinancialInvariantValidator',
    'DependencyResolver',
    'RecalculationEngine',
]
