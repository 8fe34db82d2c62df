"""
Script Exceptions

This module defines exceptions for script encoding, state serialization and
contract artifact handling.
"""


class ScriptError(Exception):
    """Base exception for script-related errors."""
    pass


class ScriptEncodingError(ScriptError):
    """Raised when a script or push sequence cannot be encoded or parsed."""
    pass


class StateEncodingError(ScriptError):
    """Raised when contract public data does not fit its state schema."""
    pass


class ArtifactError(ScriptError):
    """Raised for malformed contract artifacts or missing constructor arguments."""
    pass
