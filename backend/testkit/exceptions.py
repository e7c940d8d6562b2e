"""Exceptions raised by testkit."""


class ImproperlyConfigured(Exception):
    """Settings are missing, inconsistent, or reference unknown names."""


class ConnectionDoesNotExist(Exception):
    """A database alias was requested that is not in settings.databases."""


class DatabaseOperationForbidden(AssertionError):
    """A test touched a database it did not declare in ``databases``."""
