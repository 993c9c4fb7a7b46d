"""
Payments Module

Processor-neutral gateway contract. The Stripe implementation lives in
external/stripe/client.py; tests substitute an in-memory fake.
"""

from .interfaces import InvoicePaymentResult, PaymentProcessorGateway, SubscriptionResult

__all__ = [
    'InvoicePaymentResult',
    'PaymentProcessorGateway',
    'SubscriptionResult',
]
