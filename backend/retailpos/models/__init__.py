from .catalog import Category, Supplier, Product
from .inventory import StockLedgerEntry, StockInDocument, StockInLine, DocumentSequence
from .members import Member, MemberPointsEntry
from .sales import Sale, SaleItem, SaleReturn, SaleReturnLine

__all__ = [
    'Category', 'Supplier', 'Product',
    'StockLedgerEntry', 'StockInDocument', 'StockInLine', 'DocumentSequence',
    'Member', 'MemberPointsEntry',
    'Sale', 'SaleItem', 'SaleReturn', 'SaleReturnLine',
]
