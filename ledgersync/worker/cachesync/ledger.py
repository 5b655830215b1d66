"""
Ledger access

Reads authoritative collateral (value_a) and debt (value_b) balances. The
retry path always re-reads here rather than trusting the values carried by a
failure signal.
"""

import logging
from typing import Tuple, Optional, List

from web3 import Web3

from .types import LedgerReadError
from .config import RPCConfig, ContractsConfig
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


COLLATERAL_ABI = [{
    "name": "getCollateral",
    "type": "function",
    "stateMutability": "view",
    "inputs": [
        {"name": "user", "type": "address"},
        {"name": "asset", "type": "address"}
    ],
    "outputs": [{"name": "", "type": "uint256"}]
}]

DEBT_ABI = [{
    "name": "getDebt",
    "type": "function",
    "stateMutability": "view",
    "inputs": [
        {"name": "user", "type": "address"},
        {"name": "asset", "type": "address"}
    ],
    "outputs": [{"name": "", "type": "uint256"}]
}]


class LedgerReader:
    """Source of truth for (value_a, value_b) per (subject, asset)"""

    def read_balances(self, subject: str, asset: str) -> Tuple[int, int]:
        """
        Raises:
            LedgerReadError: Ledger could not be read
        """
        raise NotImplementedError


class Web3LedgerReader(LedgerReader):
    """
    Reads balances through contract calls with primary -> backup failover.

    getCollateral(user, asset) on the collateral manager gives value_a and
    getDebt(user, asset) on the lending engine gives value_b.
    """

    def __init__(self, rpc: RPCConfig, contracts: ContractsConfig,
                 providers: Optional[List[Web3]] = None):
        if not contracts.collateral_manager or not contracts.lending_engine:
            raise LedgerReadError("collateral_manager and lending_engine addresses are required")

        self.contracts = contracts
        if providers is None:
            providers = [self._make_web3(rpc.primary_http, rpc.request_timeout_seconds)]
            if rpc.backup_http:
                providers.append(self._make_web3(rpc.backup_http, rpc.request_timeout_seconds))
        self.providers = providers

    @staticmethod
    def _make_web3(url: str, timeout: int) -> Web3:
        return Web3(Web3.HTTPProvider(url, request_kwargs={'timeout': timeout}))

    def read_balances(self, subject: str, asset: str) -> Tuple[int, int]:
        try:
            user = Web3.to_checksum_address(subject)
            token = Web3.to_checksum_address(asset)
        except (ValueError, TypeError) as e:
            MetricsServer.increment_ledger_read_errors()
            raise LedgerReadError(f"Invalid ledger key ({subject}, {asset}): {e}") from e

        errors = []
        for index, w3 in enumerate(self.providers):
            provider_name = "primary" if index == 0 else "backup"
            try:
                collateral_manager = w3.eth.contract(
                    address=Web3.to_checksum_address(self.contracts.collateral_manager),
                    abi=COLLATERAL_ABI
                )
                lending_engine = w3.eth.contract(
                    address=Web3.to_checksum_address(self.contracts.lending_engine),
                    abi=DEBT_ABI
                )

                collateral = collateral_manager.functions.getCollateral(user, token).call()
                debt = lending_engine.functions.getDebt(user, token).call()
                return int(collateral), int(debt)

            except Exception as e:
                logger.warning(f"Ledger read via {provider_name} RPC failed: {e}")
                errors.append(f"{provider_name}: {e}")

        MetricsServer.increment_ledger_read_errors()
        raise LedgerReadError(f"Ledger read failed for ({subject}, {asset}): {'; '.join(errors)}")
