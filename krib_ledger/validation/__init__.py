"""Write-path validation and ledger consistency checks."""

from krib_ledger.validation.validator import (
    ExpenseValidator,
    check_share_consistency,
    split_by_weights,
)

__all__ = ["ExpenseValidator", "check_share_consistency", "split_by_weights"]
