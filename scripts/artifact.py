"""
Contract Artifacts

A contract artifact is what the (external, opaque) sCrypt compiler produces:
a locking-script template in hex with `<name>` placeholders for constructor
arguments, plus the ABI describing constructor and public methods.

The engine never compiles anything itself. It substitutes constructor
arguments into the template to obtain the code part, and uses the ABI to
order unlocking arguments and pick the public-method selector.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .encoding import push_data, push_int
from .exceptions import ArtifactError


_PLACEHOLDER = re.compile(r'<([A-Za-z_][A-Za-z0-9_]*)>')

BYTE_TYPES = ('bytes', 'PubKey', 'Ripemd160', 'Sha256', 'Sig', 'SigHashPreimage', 'ByteString')


@dataclass
class AbiParam:
    """Named, typed ABI parameter."""
    name: str
    type: str


@dataclass
class AbiEntry:
    """Constructor or public method description."""
    type: str  # 'constructor' or 'function'
    name: str
    params: List[AbiParam] = field(default_factory=list)
    index: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AbiEntry':
        return cls(
            type=data['type'],
            name=data.get('name', 'constructor'),
            params=[AbiParam(p['name'], p['type']) for p in data.get('params', [])],
            index=data.get('index'),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'type': self.type,
            'name': self.name,
            'params': [{'name': p.name, 'type': p.type} for p in self.params],
        }
        if self.index is not None:
            result['index'] = self.index
        return result


def encode_argument(value: Any, type_name: str) -> bytes:
    """
    Encode one constructor or method argument as a script push.

    Byte-like types are given as hex strings (or bytes), integers as int,
    booleans as bool.
    """
    if type_name == 'bool':
        if not isinstance(value, bool):
            raise ArtifactError(f"Expected bool, got {value!r}")
        return push_int(1 if value else 0)
    if type_name in ('int', 'bigint'):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ArtifactError(f"Expected int, got {value!r}")
        return push_int(value)
    if type_name in BYTE_TYPES:
        if isinstance(value, str):
            try:
                value = bytes.fromhex(value)
            except ValueError as e:
                raise ArtifactError(f"Expected hex string for {type_name}: {e}")
        if not isinstance(value, bytes):
            raise ArtifactError(f"Expected bytes for {type_name}, got {value!r}")
        return push_data(value)
    raise ArtifactError(f"Unsupported ABI type: {type_name}")


@dataclass
class ContractArtifact:
    """
    Compiled contract description.

    Attributes:
        contract: Contract name
        template_hex: Locking-script template with `<param>` placeholders
        abi: Constructor and public method entries
        pre_check_version: Version of the local pre-check rules this script
            template was written against
    """
    contract: str
    template_hex: str
    abi: List[AbiEntry] = field(default_factory=list)
    pre_check_version: int = 1

    def __post_init__(self):
        stripped = _PLACEHOLDER.sub('', self.template_hex)
        if len(stripped) % 2 or not re.fullmatch(r'[0-9a-fA-F]*', stripped):
            raise ArtifactError(f"Artifact {self.contract} has a malformed script template")

    @property
    def constructor(self) -> AbiEntry:
        for entry in self.abi:
            if entry.type == 'constructor':
                return entry
        return AbiEntry(type='constructor', name='constructor')

    @property
    def public_methods(self) -> List[AbiEntry]:
        methods = [entry for entry in self.abi if entry.type == 'function']
        return sorted(methods, key=lambda e: e.index if e.index is not None else 0)

    def method(self, name: str) -> AbiEntry:
        for entry in self.public_methods:
            if entry.name == name:
                return entry
        raise ArtifactError(f"Contract {self.contract} has no public method {name!r}")

    def method_index(self, name: str) -> int:
        entry = self.method(name)
        if entry.index is not None:
            return entry.index
        return self.public_methods.index(entry)

    def placeholders(self) -> List[str]:
        return _PLACEHOLDER.findall(self.template_hex)

    def build_code_part(self, constructor_args: Dict[str, Any]) -> bytes:
        """
        Substitute constructor arguments into the script template.

        Args:
            constructor_args: Mapping of constructor parameter name to value

        Returns:
            Code part of the locking script
        """
        types = {p.name: p.type for p in self.constructor.params}

        def substitute(match):
            name = match.group(1)
            if name not in constructor_args:
                raise ArtifactError(f"Missing constructor argument {name!r} for {self.contract}")
            return encode_argument(constructor_args[name], types.get(name, 'bytes')).hex()

        return bytes.fromhex(_PLACEHOLDER.sub(substitute, self.template_hex))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'contract': self.contract,
            'hex': self.template_hex,
            'abi': [entry.to_dict() for entry in self.abi],
            'preCheckVersion': self.pre_check_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractArtifact':
        try:
            return cls(
                contract=data['contract'],
                template_hex=data['hex'],
                abi=[AbiEntry.from_dict(entry) for entry in data.get('abi', [])],
                pre_check_version=int(data.get('preCheckVersion', 1)),
            )
        except KeyError as e:
            raise ArtifactError(f"Artifact is missing field {e}")


def load_artifact(path: Union[str, Path]) -> ContractArtifact:
    """Load a compiled artifact JSON file."""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            return ContractArtifact.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        raise ArtifactError(f"Failed to load artifact {path}: {e}")


class CompilerService(ABC):
    """
    Boundary to the external contract compiler.

    Implementations take contract source plus constructor arguments and
    return an artifact; the engine treats them as opaque.
    """

    @abstractmethod
    def compile(self, source: str, constructor_args: Dict[str, Any]) -> ContractArtifact:
        """Compile contract source into an artifact."""
        pass
