"""
Exceptions shared by the dbcli modules. Separated, so that the client,
history, editor and console modules can import them without importing
each other.
"""


class DBCLIException(Exception):
    """
    Base class for exceptions thrown by dbcli.
    """


class AbortError(DBCLIException):
    """
    Thrown to force an abort with a non-zero exit code.
    """


class DatabaseConnectionError(DBCLIException):
    """
    Thrown when the handshake with a database (network, file or
    authentication) fails. Fatal to a console session.
    """


class QueryError(DBCLIException):
    """
    Thrown when a query fails. Carries the engine's message. Recovered by
    the console, which reports it and records it to the history.
    """


class UnsupportedEngineError(DBCLIException):
    """
    Thrown when a client is requested for an engine type that has no
    adapter.
    """


class InputCancelled(DBCLIException):
    """
    Thrown when the user aborts an input request (Ctrl-C, termination
    signal, or an explicit exit from a menu).
    """


class TooManyMatchesError(DBCLIException):
    """
    Thrown to indicate that a connection specification matched more than
    one profile in the configuration file.
    """
