"""Unit detection and conversion for parsed STEP entity graphs.

STEP files declare their units as complex instances such as
``( LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT(.MILLI.,.METRE.) )`` or as
``CONVERSION_BASED_UNIT('INCH', #12)`` combined with ``LENGTH_UNIT``.
Coordinates in the file are expressed in the unit named by the
representation context's ``GLOBAL_UNIT_ASSIGNED_CONTEXT``.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set

from .entities import EntityGraph, EntityRecord, Ref, StepEnum

# Factors to the SI base unit
LENGTH_UNITS = {
    "m": 1.0,
    "mm": 0.001,
    "cm": 0.01,
    "km": 1000.0,
    "um": 1e-6,
    "nm": 1e-9,
    "in": 0.0254,
    "ft": 0.3048,
    "yd": 0.9144,
    "mile": 1609.344,
    "mil": 2.54e-5,
}

ANGLE_UNITS = {
    "rad": 1.0,
    "deg": 0.017453292519943295,
    "grad": 0.015707963267948967,
}

DEFAULT_UNITS = {
    "length": "mm",
    "angle": "rad",
}

# SI prefix enumeration -> length unit symbol for METRE
_SI_LENGTH_PREFIXES = {
    None: "m",
    "KILO": "km",
    "CENTI": "cm",
    "MILLI": "mm",
    "MICRO": "um",
    "NANO": "nm",
}


class UnitConversionError(Exception):
    """Raised when unit conversion fails."""
    pass


def normalize_unit_name(unit: str) -> str:
    """Normalize a unit name to its short symbol.

    Examples:
        >>> normalize_unit_name("MILLIMETRE")
        'mm'
        >>> normalize_unit_name("DEGREE")
        'deg'
    """
    unit = unit.strip().lower()

    step_mappings = {
        "millimetre": "mm",
        "millimeter": "mm",
        "metre": "m",
        "meter": "m",
        "centimetre": "cm",
        "centimeter": "cm",
        "kilometre": "km",
        "kilometer": "km",
        "micrometre": "um",
        "micrometer": "um",
        "micron": "um",
        "nanometre": "nm",
        "nanometer": "nm",
        "inch": "in",
        "inches": "in",
        "foot": "ft",
        "feet": "ft",
        "yard": "yd",
        "thou": "mil",
        "degree": "deg",
        "degrees": "deg",
        "radian": "rad",
        "radians": "rad",
    }

    return step_mappings.get(unit, unit)


def get_conversion_factor(from_unit: str, to_unit: str, unit_type: str = "length") -> float:
    """Return the factor that converts values in ``from_unit`` to ``to_unit``.

    Raises:
        UnitConversionError: If the unit type or either unit is unknown
    """
    unit_tables = {
        "length": LENGTH_UNITS,
        "angle": ANGLE_UNITS,
    }

    if unit_type not in unit_tables:
        raise UnitConversionError(f"Unknown unit type: {unit_type}")

    table = unit_tables[unit_type]
    from_normalized = normalize_unit_name(from_unit)
    to_normalized = normalize_unit_name(to_unit)

    if from_normalized not in table:
        raise UnitConversionError(f"Unknown {unit_type} unit: {from_unit}")
    if to_normalized not in table:
        raise UnitConversionError(f"Unknown {unit_type} unit: {to_unit}")

    return table[from_normalized] / table[to_normalized]


def convert_value(value: float, from_unit: str, to_unit: str, unit_type: str = "length") -> float:
    """Convert a value between units.

    Examples:
        >>> convert_value(1000, "mm", "m")
        1.0
    """
    return value * get_conversion_factor(from_unit, to_unit, unit_type)


def _enum_name(value: object) -> Optional[str]:
    if isinstance(value, StepEnum):
        return value.name
    return None


def _unit_symbol(record: EntityRecord, kind: str) -> Optional[str]:
    if record.is_a("SI_UNIT"):
        prefix, name = record.part("SI_UNIT")[-2:]
        name = _enum_name(name)
        prefix = _enum_name(prefix)
        if kind == "length" and name == "METRE":
            return _SI_LENGTH_PREFIXES.get(prefix)
        if kind == "angle" and name == "RADIAN":
            return "rad"
        return None
    if record.is_a("CONVERSION_BASED_UNIT"):
        label = record.part("CONVERSION_BASED_UNIT")[0]
        if isinstance(label, str):
            symbol = normalize_unit_name(label)
            table = LENGTH_UNITS if kind == "length" else ANGLE_UNITS
            if symbol in table:
                return symbol
    return None


def _assigned_units(graph: EntityGraph) -> List[EntityRecord]:
    """Units listed by ``GLOBAL_UNIT_ASSIGNED_CONTEXT`` instances, in file order."""
    units: List[EntityRecord] = []
    for context in graph.of_type("GLOBAL_UNIT_ASSIGNED_CONTEXT"):
        for ref in context.part("GLOBAL_UNIT_ASSIGNED_CONTEXT")[-1]:
            if isinstance(ref, Ref) and ref.id in graph:
                units.append(graph[ref.id])
    return units


def _conversion_bases(graph: EntityGraph) -> Set[int]:
    """Ids of units that only serve as the base of a ``*_MEASURE_WITH_UNIT``."""
    bases: Set[int] = set()
    for record in graph.records.values():
        if any(name.endswith("MEASURE_WITH_UNIT") for name in record.type_names):
            bases.update(ref.id for ref in record.references())
    return bases


def _detect(graph: EntityGraph, marker: str, kind: str) -> str:
    candidates = [record for record in _assigned_units(graph) if record.is_a(marker)]
    if not candidates:
        bases = _conversion_bases(graph)
        candidates = [record for record in graph.of_type(marker) if record.id not in bases]
    for record in candidates:
        symbol = _unit_symbol(record, kind)
        if symbol is not None:
            return symbol
    return DEFAULT_UNITS[kind]


def detect_length_unit(graph: EntityGraph) -> str:
    """Return the length unit declared by the file (``mm`` if none is found)."""
    return _detect(graph, "LENGTH_UNIT", "length")


def detect_units(graph: EntityGraph) -> Dict[str, str]:
    """Return the declared length and plane-angle units."""
    return {
        "length": detect_length_unit(graph),
        "angle": _detect(graph, "PLANE_ANGLE_UNIT", "angle"),
    }
