"""
Covenant Engine - Script Construction

Opcode constants, push/number encoding, the stateful covenant locking-script
layout, and compiled contract artifacts.
"""

from .opcodes import ScriptOpcode
from .encoding import (
    StateField,
    StateSchema,
    build_stateful_script,
    split_stateful_script,
    push_data,
    push_int,
    parse_pushes,
    p2pkh_script,
    p2pkh_script_for_address,
    is_p2pkh,
    encode_script_number,
    decode_script_number,
)
from .artifact import AbiEntry, AbiParam, ContractArtifact, CompilerService, load_artifact
from .exceptions import ScriptError, ScriptEncodingError, StateEncodingError, ArtifactError

__all__ = [
    'ScriptOpcode',
    'StateField',
    'StateSchema',
    'build_stateful_script',
    'split_stateful_script',
    'push_data',
    'push_int',
    'parse_pushes',
    'p2pkh_script',
    'p2pkh_script_for_address',
    'is_p2pkh',
    'encode_script_number',
    'decode_script_number',
    'AbiEntry',
    'AbiParam',
    'ContractArtifact',
    'CompilerService',
    'load_artifact',
    'ScriptError',
    'ScriptEncodingError',
    'StateEncodingError',
    'ArtifactError',
]
