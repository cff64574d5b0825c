from .tenancy import Tenant, Branch, TenantTaxSettings
from .inventory import Product, InventoryBatch, InventoryAuditLog
from .customers import Customer
from .sales import Sale, SaleLineItem, SalePayment
from .credit import CreditAccount, CreditPayment
from .returns import SaleReturn, SaleReturnLineItem
from .edits import SaleEditRequest
from .mpesa import MpesaTransaction
from .documents import DocumentSequence

__all__ = [
    'Tenant', 'Branch', 'TenantTaxSettings',
    'Product', 'InventoryBatch', 'InventoryAuditLog',
    'Customer',
    'Sale', 'SaleLineItem', 'SalePayment',
    'CreditAccount', 'CreditPayment',
    'SaleReturn', 'SaleReturnLineItem',
    'SaleEditRequest',
    'MpesaTransaction',
    'DocumentSequence',
]
