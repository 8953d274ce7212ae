"""Tests for tessellation options and presets."""

from __future__ import annotations

import math

import pytest

from kernel.config import PRESETS, TessellationOptions, get_preset
from kernel.errors import ConfigurationError


class TestTessellationOptions:
    """Test cases for TessellationOptions."""

    def test_defaults_are_valid(self):
        options = TessellationOptions()
        assert options.validate() is options
        assert options.chord_tolerance == 0.1
        assert options.non_manifold == "reject"
        assert options.workers == 1
        assert math.isinf(options.simplify_max_error)

    @pytest.mark.parametrize("overrides,message", [
        ({"chord_tolerance": 0.0}, "chord_tolerance"),
        ({"chord_tolerance": -1.0}, "chord_tolerance"),
        ({"angular_tolerance": 4.0}, "angular_tolerance"),
        ({"workers": 0}, "workers"),
        ({"non_manifold": "ignore"}, "non_manifold"),
        ({"simplify_ratio": 0.0}, "simplify_ratio"),
        ({"simplify_ratio": 1.5}, "simplify_ratio"),
        ({"max_face_points": 2}, "max_face_points"),
    ])
    def test_invalid_values(self, overrides, message):
        """Test out-of-range options are rejected."""
        with pytest.raises(ConfigurationError, match=message):
            TessellationOptions(**overrides).validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            TessellationOptions(workers=-3).validate()

    def test_with_overrides_ignores_none(self):
        """Test None overrides keep the existing value."""
        options = TessellationOptions().with_overrides(chord_tolerance=0.05, workers=None, backend=None)
        assert options.chord_tolerance == 0.05
        assert options.workers == 1
        assert options.backend == "native"

    def test_with_overrides_validates(self):
        with pytest.raises(ConfigurationError):
            TessellationOptions().with_overrides(chord_tolerance=-0.1)

    def test_options_are_frozen(self):
        options = TessellationOptions()
        with pytest.raises(Exception):
            options.chord_tolerance = 1.0  # type: ignore[misc]

    def test_dict_round_trip(self):
        options = TessellationOptions(chord_tolerance=0.02, workers=4, non_manifold="warn")
        assert TessellationOptions.from_dict(options.to_dict()) == options

    def test_from_dict_strict(self):
        """Test unknown keys are rejected in strict mode and dropped otherwise."""
        with pytest.raises(ConfigurationError, match="Unknown tessellation options: colour"):
            TessellationOptions.from_dict({"colour": "red"})

        options = TessellationOptions.from_dict({"colour": "red", "workers": 2}, strict=False)
        assert options.workers == 2


class TestPresets:
    """Test cases for named presets."""

    def test_presets_exist(self):
        assert set(PRESETS) == {"draft", "default", "fine"}
        for preset in PRESETS.values():
            preset.validate()

    def test_presets_are_ordered_by_tolerance(self):
        assert (PRESETS["draft"].chord_tolerance
                > PRESETS["default"].chord_tolerance
                > PRESETS["fine"].chord_tolerance)

    def test_get_preset(self):
        assert get_preset("default") == TessellationOptions()

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError, match="Unknown preset 'ultra'"):
            get_preset("ultra")
