"""Charge processor adapters."""

from marketplace_ledger.processors.base import (
    ChargeProcessor,
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorCardError,
    ChargeProcessorError,
    ChargeProcessorInsufficientFundsError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
    ProcessorCharge,
    ProcessorRefund,
    TransferReversal,
)
from marketplace_ledger.processors.paypal_stub import PaypalStubProcessor
from marketplace_ledger.processors.registry import ChargeProcessorRegistry, UnknownChargeProcessorError
from marketplace_ledger.processors.stripe_stub import StripeStubProcessor

__all__ = [
    "ChargeProcessor",
    "ChargeProcessorAlreadyRefundedError",
    "ChargeProcessorCardError",
    "ChargeProcessorError",
    "ChargeProcessorInsufficientFundsError",
    "ChargeProcessorInvalidRequestError",
    "ChargeProcessorUnavailableError",
    "ProcessorCharge",
    "ProcessorRefund",
    "TransferReversal",
    "PaypalStubProcessor",
    "ChargeProcessorRegistry",
    "UnknownChargeProcessorError",
    "StripeStubProcessor",
]
