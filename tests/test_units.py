"""Tests for unit detection and conversion."""

from __future__ import annotations

import pytest

from stepgraph.parser import parse_step
from stepgraph.units import (
    UnitConversionError,
    convert_value,
    detect_length_unit,
    detect_units,
    get_conversion_factor,
    normalize_unit_name,
)

from conftest import make_box, wrap


class TestNormalization:
    """Test cases for unit name normalization."""

    @pytest.mark.parametrize("name,expected", [
        ("MILLIMETRE", "mm"),
        ("metre", "m"),
        ("INCH", "in"),
        ("Degree", "deg"),
        ("radian", "rad"),
        ("mm", "mm"),
    ])
    def test_normalize(self, name, expected):
        assert normalize_unit_name(name) == expected


class TestConversion:
    """Test cases for unit conversion."""

    def test_length_conversion(self):
        assert convert_value(1000, "mm", "m") == pytest.approx(1.0)
        assert convert_value(1, "in", "mm") == pytest.approx(25.4)
        assert get_conversion_factor("ft", "in") == pytest.approx(12.0)

    def test_angle_conversion(self):
        assert convert_value(180, "deg", "rad", "angle") == pytest.approx(3.141592653589793)

    def test_unknown_unit(self):
        with pytest.raises(UnitConversionError, match="Unknown length unit"):
            get_conversion_factor("furlong", "mm")

    def test_unknown_unit_type(self):
        with pytest.raises(UnitConversionError, match="Unknown unit type"):
            get_conversion_factor("mm", "m", "mass")


class TestDetection:
    """Test cases for reading declared units from an entity graph."""

    def test_defaults_without_units(self):
        """Test files without unit entities default to mm and radians."""
        graph = parse_step(wrap("#1 = CARTESIAN_POINT('',(0.,0.,0.));"))
        assert detect_units(graph) == {"length": "mm", "angle": "rad"}

    @pytest.mark.parametrize("prefix,expected", [
        (".MILLI.", "mm"),
        (".CENTI.", "cm"),
        ("$", "m"),
    ])
    def test_si_length_units(self, prefix, expected):
        graph = parse_step(wrap(f"#1 = ( LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT({prefix},.METRE.) );"))
        assert detect_length_unit(graph) == expected

    def test_conversion_based_inch(self):
        """Test an inch unit is not mistaken for its millimetre base."""
        graph = parse_step(make_box(length_unit="in"))
        assert detect_length_unit(graph) == "in"

    def test_conversion_based_without_context(self):
        """Test a conversion-based unit wins over its base when no context lists units."""
        graph = parse_step(wrap(
            "#1 = ( LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT(.MILLI.,.METRE.) );",
            "#2 = LENGTH_MEASURE_WITH_UNIT(LENGTH_MEASURE(25.4),#1);",
            "#3 = ( CONVERSION_BASED_UNIT('INCH',#2) LENGTH_UNIT() NAMED_UNIT(*) );",
        ))
        assert detect_length_unit(graph) == "in"

    def test_degree_angle_unit(self):
        graph = parse_step(wrap(
            "#1 = ( NAMED_UNIT(*) PLANE_ANGLE_UNIT() SI_UNIT($,.RADIAN.) );",
            "#2 = PLANE_ANGLE_MEASURE_WITH_UNIT(PLANE_ANGLE_MEASURE(0.0174532925),#1);",
            "#3 = ( CONVERSION_BASED_UNIT('DEGREE',#2) NAMED_UNIT(*) PLANE_ANGLE_UNIT() );",
        ))
        assert detect_units(graph)["angle"] == "deg"

    def test_assigned_context_takes_precedence(self):
        """Test the unit listed by the representation context is used."""
        graph = parse_step(wrap(
            "#1 = ( LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT(.MILLI.,.METRE.) );",
            "#2 = ( LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT($,.METRE.) );",
            "#3 = ( GEOMETRIC_REPRESENTATION_CONTEXT(3) GLOBAL_UNIT_ASSIGNED_CONTEXT((#2)) "
            "REPRESENTATION_CONTEXT('','') );",
        ))
        assert detect_length_unit(graph) == "m"
