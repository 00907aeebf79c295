from custody.models.deposit import DepositAddress, DepositAddressStatus, Deposit, DepositStatus
from custody.models.balance import Balance, LedgerEntry, LedgerEntryType
from custody.models.withdrawal import Withdrawal, WithdrawalStatus, WITHDRAWAL_TRANSITIONS
from custody.models.counter import Counter
