from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..holdings import AccountBalanceSnapshot, WalletBalanceSnapshot


class BlockchainDataProvider(Protocol):
    def get_wallet_balances(self, address: str, chains: Iterable[str]) -> list[WalletBalanceSnapshot]: ...


class OpenFinanceProvider(Protocol):
    def get_account_balance(self, external_account_id: str) -> Optional[AccountBalanceSnapshot]: ...


class StaticBlockchainProvider:
    """Serves canned balances keyed by wallet address."""

    def __init__(self, balances: dict[str, list[WalletBalanceSnapshot]] | None = None):
        self.balances = balances or {}

    def get_wallet_balances(self, address: str, chains: Iterable[str]) -> list[WalletBalanceSnapshot]:
        wanted = {c.lower() for c in chains or ()}
        snaps = self.balances.get(address, [])
        if not wanted:
            return list(snaps)
        return [s for s in snaps if s.chain.lower() in wanted]


class StaticOpenFinanceProvider:
    """Serves canned balances keyed by external account id."""

    def __init__(self, balances: dict[str, AccountBalanceSnapshot] | None = None):
        self.balances = balances or {}

    def get_account_balance(self, external_account_id: str) -> Optional[AccountBalanceSnapshot]:
        return self.balances.get(external_account_id)
