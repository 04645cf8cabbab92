"""Models package."""

from .account import Account
from .credit_ledger import CreditLedger
from .conversion_record import ConversionRecord
