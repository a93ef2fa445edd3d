"""Error taxonomy for the coordination layer.

Nothing here reaches the status line itself: the coordinator turns every
failure into a fallback result and tags it with an ErrorCode so callers and
telemetry can tell the paths apart.
"""
from enum import Enum


class ErrorCode(str, Enum):
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    FETCH_FAILURE = "FETCH_FAILURE"
    EMPTY_RESULT = "EMPTY_RESULT"
    CORRUPT_CACHE = "CORRUPT_CACHE"
    CACHE_WRITE_FAILED = "CACHE_WRITE_FAILED"
    COOLDOWN = "COOLDOWN"


class StatuslineCacheError(Exception):
    code = None


class FetchFailure(StatuslineCacheError):
    code = ErrorCode.FETCH_FAILURE


class FetchTimeout(FetchFailure):
    code = ErrorCode.FETCH_TIMEOUT


class LockUnavailable(StatuslineCacheError):
    code = ErrorCode.LOCK_UNAVAILABLE


class CorruptCacheFile(StatuslineCacheError):
    code = ErrorCode.CORRUPT_CACHE


class ConfigError(StatuslineCacheError):
    pass


class EmptyResult(FetchFailure):
    code = ErrorCode.EMPTY_RESULT
