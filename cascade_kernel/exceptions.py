"""
Typed exception hierarchy for the cost cascade.

Every error carries a machine-readable ``code`` and its structured data as
attributes, so callers catch by type and log by field instead of parsing
message text.

Hierarchy:

    CascadeError (base)
    |
    +-- LedgerError
    |   +-- LedgerEventNotFoundError
    |
    +-- StageError
    |   +-- StageNotRegisteredError
    |
    +-- ExchangeRateError
    |   +-- ExchangeRateUnavailableError
    |   +-- ExchangeRateFetchError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

Codes:

Category      | Code                        | When raised
--------------|-----------------------------|---------------------------------------
Ledger        | LEDGER_EVENT_NOT_FOUND      | mark_processed/get on an unknown id
Stage         | STAGE_NOT_REGISTERED        | dispatch for an event type with no stage
Exchange rate | EXCHANGE_RATE_UNAVAILABLE   | no published rate within the lookback
              | EXCHANGE_RATE_FETCH_FAILED  | rate service failed (network/HTTP/body)
Immutability  | IMMUTABILITY_VIOLATION      | consumption record or ledger fact edited
Config        | CONFIGURATION_INVALID       | YAML config missing keys or malformed

Policy:
    Missing prices and missing references are NOT errors; engines resolve
    them to 0 and services log-and-skip. Exchange-rate errors always
    propagate so the stage invocation fails and its ledger event stays
    unprocessed for a later retry.
"""

from datetime import date


class CascadeError(Exception):
    """Base exception for all cost cascade errors."""

    code: str = "CASCADE_ERROR"


# Ledger-related exceptions


class LedgerError(CascadeError):
    code: str = "LEDGER_ERROR"


class LedgerEventNotFoundError(LedgerError):
    """Ledger event with given ID was not found."""

    code: str = "LEDGER_EVENT_NOT_FOUND"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Ledger event not found: {event_id}")


# Stage-related exceptions


class StageError(CascadeError):
    code: str = "STAGE_ERROR"


class StageNotRegisteredError(StageError):
    """No cascade stage consumes the given event type."""

    code: str = "STAGE_NOT_REGISTERED"

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"No cascade stage registered for event type: {event_type}")


# Exchange-rate exceptions


class ExchangeRateError(CascadeError):
    code: str = "EXCHANGE_RATE_ERROR"


class ExchangeRateUnavailableError(ExchangeRateError):
    """No rate was published on the requested date or any earlier day in range."""

    code: str = "EXCHANGE_RATE_UNAVAILABLE"

    def __init__(self, currency: str, requested_date: date, lookback_days: int):
        self.currency = currency
        self.requested_date = requested_date
        self.lookback_days = lookback_days
        super().__init__(
            f"No {currency} rate published on {requested_date.isoformat()} "
            f"or within {lookback_days} days before it"
        )


class ExchangeRateFetchError(ExchangeRateError):
    """The rate service could not be reached or returned an unusable answer."""

    code: str = "EXCHANGE_RATE_FETCH_FAILED"

    def __init__(self, currency: str, rate_date: date, reason: str):
        self.currency = currency
        self.rate_date = rate_date
        self.reason = reason
        super().__init__(
            f"Failed to fetch {currency} rate for {rate_date.isoformat()}: {reason}"
        )


# Immutability exceptions


class ImmutabilityError(CascadeError):
    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration exceptions


class ConfigurationError(CascadeError):
    """Cascade configuration could not be loaded."""

    code: str = "CONFIGURATION_INVALID"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid cascade configuration ({path}): {reason}")
