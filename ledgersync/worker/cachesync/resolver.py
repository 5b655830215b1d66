"""
View target resolution

Maps a logical view name (the cache namespace) to the contract currently
serving it. A name that resolves to nothing, or to the zero address, is
unresolved and the push becomes a view-unresolved failure signal.
"""

import logging
import re
import threading
from typing import Optional, Dict, Tuple
from datetime import datetime, timedelta

from web3 import Web3

from .types import UNKNOWN_VIEW_TARGET
from .config import ContractsConfig
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

REGISTRY_ABI = [{
    "name": "getModule",
    "type": "function",
    "stateMutability": "view",
    "inputs": [{"name": "key", "type": "bytes32"}],
    "outputs": [{"name": "", "type": "address"}]
}]


def is_zero_address(value: Optional[str]) -> bool:
    return not value or value.lower() == UNKNOWN_VIEW_TARGET


def module_key_hash(module_key: str) -> bytes:
    """Registry keys are keccak256 of the module name, e.g. POSITION_VIEW"""
    return bytes(Web3.keccak(text=module_key))


class ViewTargetResolver:
    """Resolves a logical view name to a live contract address"""

    def resolve(self, view_target: str) -> Optional[str]:
        raise NotImplementedError

    def name_for(self, address: str) -> Optional[str]:
        """Logical view name currently served by `address`, if known"""
        return None

    def refresh(self):
        """Drop any cached resolution"""
        pass


class StaticViewTargetResolver(ViewTargetResolver):
    """
    Resolution from the contracts.view_targets config map.

    A name that is already a mapped address, or any non-zero address,
    resolves to itself.
    """

    def __init__(self, view_targets: Dict[str, str]):
        self.view_targets = dict(view_targets)

    def resolve(self, view_target: str) -> Optional[str]:
        if not view_target or view_target == UNKNOWN_VIEW_TARGET:
            return None

        if view_target in self.view_targets:
            address = self.view_targets[view_target]
            return None if is_zero_address(address) else address

        if view_target in self.view_targets.values():
            return view_target

        if ADDRESS_RE.match(view_target) and not is_zero_address(view_target):
            return view_target

        logger.warning(f"View target {view_target} is not configured")
        return None

    def name_for(self, address: str) -> Optional[str]:
        for name, mapped in self.view_targets.items():
            if mapped.lower() == address.lower():
                return name
        return None


class RegistryViewTargetResolver(ViewTargetResolver):
    """
    Resolution through the on-chain module registry (getModule(bytes32)).

    Lookups are cached for module_cache_ttl_seconds; refresh() forces the
    next lookup to hit the registry, e.g. after a module upgrade.
    """

    def __init__(self, w3: Web3, contracts: ContractsConfig, clock: Optional[Clock] = None):
        if not contracts.registry:
            raise ValueError("contracts.registry is required for registry resolution")

        self.contracts = contracts
        self.clock = clock or SystemClock()
        self.ttl = timedelta(seconds=contracts.module_cache_ttl_seconds)
        self.registry = w3.eth.contract(
            address=Web3.to_checksum_address(contracts.registry),
            abi=REGISTRY_ABI
        )
        self._cache: Dict[str, Tuple[Optional[str], datetime]] = {}
        self._lock = threading.Lock()

    def resolve(self, view_target: str) -> Optional[str]:
        if not view_target or view_target == UNKNOWN_VIEW_TARGET:
            return None

        module_key = self.contracts.view_module_keys.get(view_target)
        if module_key is None:
            # Not a registry-managed view; accept explicit addresses
            if ADDRESS_RE.match(view_target) and not is_zero_address(view_target):
                return view_target
            logger.warning(f"No registry module key for view {view_target}")
            return None

        now = self.clock.now()
        with self._lock:
            cached = self._cache.get(view_target)
            if cached is not None and now - cached[1] < self.ttl:
                return cached[0]

        try:
            address = self.registry.functions.getModule(module_key_hash(module_key)).call()
        except Exception as e:
            logger.error(f"Registry lookup for {module_key} failed: {e}")
            return None

        resolved = None if is_zero_address(address) else address
        with self._lock:
            self._cache[view_target] = (resolved, now)

        if resolved is None:
            logger.warning(f"Registry has no module for {module_key}")
        return resolved

    def name_for(self, address: str) -> Optional[str]:
        # resolve() serves fresh entries from the cache and queries the rest
        for name in self.contracts.view_module_keys:
            resolved = self.resolve(name)
            if resolved is not None and resolved.lower() == address.lower():
                return name
        return None

    def refresh(self):
        with self._lock:
            self._cache.clear()
        logger.info("View target cache cleared")
