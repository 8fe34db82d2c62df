"""
Contract Family Registry

Maps family names, as stored in contract handles, to their local rules.
"""

from typing import Dict, List, Type

from .auction import Auction
from .counter import Counter
from .exceptions import UnknownFamilyError
from .hashlock import HashLock
from .state_machine import ContractFamily
from .tictactoe import TicTacToe


_FAMILIES: Dict[str, Type[ContractFamily]] = {}


def register_family(family_class: Type[ContractFamily]) -> Type[ContractFamily]:
    """Register a family class under its name. Usable as a class decorator."""
    if not family_class.name:
        raise ValueError(f"{family_class.__name__} has no family name")
    _FAMILIES[family_class.name] = family_class
    return family_class


def get_family(name: str) -> ContractFamily:
    try:
        return _FAMILIES[name]()
    except KeyError:
        raise UnknownFamilyError(f"No contract family named {name!r}")


def list_families() -> List[str]:
    return sorted(_FAMILIES)


for _family in (TicTacToe, Auction, Counter, HashLock):
    register_family(_family)
