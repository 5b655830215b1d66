"""
Idempotency Ledger

Tracks the last accepted request id per cache key and derives the
deterministic identifiers used by the retry path. Identifiers are keccak
hashes so they match the request ids produced on-chain by the ledger.
"""

from typing import Optional, Tuple
import logging

from web3 import Web3

from .database import DatabaseManager, CacheEntryModel

logger = logging.getLogger(__name__)


def is_duplicate(last_request_id: Optional[str], request_id: str) -> bool:
    """A write is a duplicate when it repeats the last accepted request id.

    Legacy pushes carry an empty request id and are never duplicates.
    """
    if not request_id:
        return False
    return request_id == last_request_id


def derive_job_id(source_ref: str, view_target: str, subject: str, asset: str) -> str:
    """Deterministic retry job id; identical signals map to the same job"""
    return Web3.to_hex(Web3.keccak(text=f"{source_ref}|{view_target}|{subject}|{asset}"))


def derive_retry_request_id(job_id: str, attempt: int) -> str:
    """Request id for the n-th retry of a job, unique per attempt"""
    return Web3.to_hex(Web3.keccak(text=f"retry|{job_id}|{attempt}"))


def derive_sync_request_id(subject: str, asset: str, view_target: str, version: int) -> str:
    """Request id for an operator resync applied on top of `version`"""
    return Web3.to_hex(Web3.keccak(text=f"sync|{subject}|{asset}|{view_target}|{version}"))


class IdempotencyLedger:
    """
    Per-key idempotency state, stored with each cache entry.

    VersionedCacheStore consults it inside its compare-and-set session so the
    duplicate check and the write see the same row.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def last_request_id(self, key: Tuple[str, str, str], session=None) -> Optional[str]:
        if session is not None:
            entry = session.get(CacheEntryModel, key)
            return entry.last_request_id if entry is not None else None

        with self.db_manager.get_session() as own_session:
            entry = own_session.get(CacheEntryModel, key)
            return entry.last_request_id if entry is not None else None

    def seen(self, key: Tuple[str, str, str], request_id: str, session=None) -> bool:
        """True when `request_id` was the last write accepted for `key`"""
        return is_duplicate(self.last_request_id(key, session=session), request_id)
