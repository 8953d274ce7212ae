"""STEP entity graph package.

This package parses ISO 10303-21 files into an arena of typed entity
records with checked cross-references, and detects the declared units.
"""

from .entities import DERIVED, EntityGraph, EntityRecord, HeaderRecord, Ref, StepEnum, TypedParam
from .errors import ParseError, StepMeshError
from .parser import parse_step
from .units import convert_value, detect_length_unit, detect_units

__version__ = "0.1.0"
__all__ = [
    "DERIVED", "EntityGraph", "EntityRecord", "HeaderRecord", "Ref", "StepEnum", "TypedParam",
    "ParseError", "StepMeshError", "parse_step",
    "convert_value", "detect_length_unit", "detect_units",
]
