# betsync/chain/errors.py
"""
Error taxonomy for chain reads and writes.

FetchError   transport/RPC failure or timeout; retryable.
DecodeError  a log or return value did not match the expected shape; skip the item.
NotFound     the bet id has no record (zero-address creator).
ActionFailed a mutating call was rejected by the signer or reverted.
ScanFailed   discovery could not start at all (e.g. chain head unreadable).
"""


class BetSyncError(Exception):
    pass


class FetchError(BetSyncError):
    pass


class DecodeError(BetSyncError):
    pass


class NotFound(BetSyncError):
    pass


class ActionFailed(BetSyncError):
    pass


class ScanFailed(BetSyncError):
    pass
