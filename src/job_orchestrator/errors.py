"""
Exceptions for the job orchestrator.

Transport failures (broker/connection) are separated from provider failures
so consume loops and the reconciler can decide between retrying, backing off
and exiting quietly on shutdown.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base error for the orchestrator."""

    pass


class TransportError(OrchestratorError):
    """Broker call failed (connection dropped, timeout, protocol error)."""

    pass


class ProviderError(OrchestratorError):
    """External job provider call failed."""

    pass


class ProviderNotConfigured(ProviderError):
    """Provider is disabled or missing credentials."""

    pass


class StoreError(OrchestratorError):
    """Work item store call failed."""

    pass


class RetryableStoreError(StoreError):
    """Temporary database failure (connection lost, serialization, deadlock)."""

    pass


class ConstraintViolation(StoreError):
    """Database constraint violations (unique, check, foreign key)."""

    pass


class ConsumerStateError(OrchestratorError):
    """Lifecycle method called in a state that does not allow it."""

    pass


def is_connection_error(e: BaseException) -> bool:
    """True when the failure means the underlying connection is gone."""
    import redis.exceptions as R

    if isinstance(e, TransportError) and e.__cause__ is not None:
        return is_connection_error(e.__cause__)
    if isinstance(e, (R.ConnectionError, R.TimeoutError, ConnectionError, OSError)):
        return True
    msg = str(e).lower()
    return "connection" in msg and ("closed" in msg or "reset" in msg)


def map_redis_error(e: Exception) -> OrchestratorError:
    import redis.exceptions as R

    if isinstance(e, OrchestratorError):
        return e
    if isinstance(e, (R.ConnectionError, R.TimeoutError, ConnectionError, OSError)):
        return TransportError(f"connection failure: {e}")
    if isinstance(e, R.RedisError):
        return TransportError(str(e))
    return OrchestratorError(str(e))


def map_db_error(e: Exception) -> OrchestratorError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, OrchestratorError):
        return e
    if isinstance(e, (E.SerializationFailure, E.DeadlockDetected, psycopg.OperationalError)):
        return RetryableStoreError(str(e))
    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.ForeignKeyViolation)):
        return ConstraintViolation(str(e))
    return StoreError(str(e))
