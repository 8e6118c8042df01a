class CounterError(Exception):
    """ Base class for every failure the counting engine reports. """
    status_code = 500


class NotFound(CounterError):
    # Only raised by deletion paths. Reads of unknown keys yield zero records.
    status_code = 404


class StorageUnavailable(CounterError):
    status_code = 503


class InvalidKey(CounterError):
    status_code = 400


class InvalidCount(CounterError):
    status_code = 400


class InvalidMerge(CounterError):
    status_code = 400


class ConfigurationError(CounterError):
    status_code = 500
