"""Exceptions raised by bagfile."""


class BagFileError(Exception):
    """Base class for all bagfile errors."""


class FormatError(BagFileError, ValueError):
    """Binary data does not match the expected index or WAVE layout."""


class StateError(BagFileError, RuntimeError):
    """An operation was invoked before its required prior state."""


class RecordNotFoundError(BagFileError, KeyError):
    """No index record exists with the requested name."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ''


class DuplicateNameError(BagFileError, ValueError):
    """A record with the same name is already present in the index."""
