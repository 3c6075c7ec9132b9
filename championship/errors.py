from __future__ import annotations


class StandingsError(Exception):
    """Base class for failures that abort a standings recomputation."""

    kind = "standings_error"


class ConfigurationError(StandingsError):
    kind = "configuration_error"


class DataIntegrityError(StandingsError):
    kind = "data_integrity_error"


class IncompleteDataError(StandingsError):
    kind = "incomplete_data_error"
