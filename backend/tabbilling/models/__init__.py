from .tabs import Tab, LineItem, Payment
from .billing import BillingGroup, BillingGroupRule, Invoice
from .audit import AuditEntry

__all__ = [
    'Tab', 'LineItem', 'Payment',
    'BillingGroup', 'BillingGroupRule', 'Invoice',
    'AuditEntry',
]
