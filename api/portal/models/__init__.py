from portal.models.account import BalanceSnapshot, BankAccount, BankTransaction
from portal.models.entity import BusinessEntity
from portal.models.sync_run import SyncRun

__all__ = ["BalanceSnapshot", "BankAccount", "BankTransaction", "BusinessEntity", "SyncRun"]
