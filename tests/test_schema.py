"""
Tests for keys, typed values and result objects.
"""

import pytest

from tweakguard.core.schema import (
    ConfigKey,
    ConfigValue,
    ErrorKind,
    MutationResult,
    StoreResult,
    ValueKind,
    validate_value,
)


class TestConfigKey:
    """Key parsing, normalisation and comparison."""

    @pytest.mark.parametrize("text", [
        r"HKLM\SOFTWARE\Example",
        r"HKLM:\SOFTWARE\Example",
        r"HKEY_LOCAL_MACHINE\SOFTWARE\Example",
        "hklm/SOFTWARE/Example",
        r"HKLM\\SOFTWARE\Example\\",
    ])
    def test_parse_forms(self, text):
        key = ConfigKey.parse(text)
        assert key.hive == "HKLM"
        assert key.path == r"SOFTWARE\Example"
        assert str(key) == r"HKLM\SOFTWARE\Example"

    def test_unknown_hive_rejected(self):
        with pytest.raises(ValueError):
            ConfigKey.parse(r"HKXX\SOFTWARE")

    def test_case_insensitive_equality(self):
        a = ConfigKey.parse(r"HKLM\Software\Example")
        b = ConfigKey.parse(r"hkey_local_machine\SOFTWARE\EXAMPLE")
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

    def test_parent_and_child(self):
        key = ConfigKey.parse(r"HKCU\A\B")
        assert key.parent == ConfigKey.parse(r"HKCU\A")
        assert key.child("C") == ConfigKey.parse(r"HKCU\A\B\C")
        assert ConfigKey("HKCU", "").parent is None

    def test_ancestry(self):
        parent = ConfigKey.parse(r"HKLM\A")
        child = ConfigKey.parse(r"HKLM\A\B\C")
        sibling = ConfigKey.parse(r"HKLM\AB")
        assert parent.is_ancestor_of(child)
        assert not parent.is_ancestor_of(sibling)
        assert not child.is_ancestor_of(parent)
        assert child.relative_to(parent) == r"B\C"

    def test_relative_to_unrelated_key_raises(self):
        with pytest.raises(ValueError):
            ConfigKey.parse(r"HKLM\A").relative_to(ConfigKey.parse(r"HKLM\B"))

    def test_digest_stable_across_case(self):
        a = ConfigKey.parse(r"HKLM\Software\X")
        b = ConfigKey.parse(r"HKLM\SOFTWARE\x")
        assert a.digest() == b.digest()
        assert len(a.digest()) == 10

    def test_sanitized_is_file_safe(self):
        key = ConfigKey.parse(r"HKLM\SOFTWARE\Some Vendor\App:1")
        assert key.sanitized() == "HKLM_SOFTWARE_Some_Vendor_App_1"


class TestConfigValue:
    """Type validation for stored values."""

    def test_dword_range(self):
        validate_value(ValueKind.DWORD, 0xFFFFFFFF)
        with pytest.raises(ValueError):
            validate_value(ValueKind.DWORD, 2 ** 32)
        with pytest.raises(ValueError):
            validate_value(ValueKind.DWORD, -1)

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ValueError):
            ConfigValue(ValueKind.DWORD, True)

    def test_string_kinds(self):
        ConfigValue(ValueKind.EXPAND_STRING, "%SystemRoot%")
        with pytest.raises(ValueError):
            ConfigValue(ValueKind.STRING, 5)

    def test_multi_string_requires_strings(self):
        ConfigValue(ValueKind.MULTI_STRING, ["a", "b"])
        with pytest.raises(ValueError):
            ConfigValue(ValueKind.MULTI_STRING, ["a", 1])

    def test_binary_json_uses_hex(self):
        value = ConfigValue(ValueKind.BINARY, b"\x01\xff")
        assert value.to_json() == ["BINARY", "01ff"]
        assert ConfigValue.from_json(value.to_json()) == value

    def test_kind_accepts_string(self):
        assert ConfigValue("QWORD", 2 ** 40).kind == ValueKind.QWORD


class TestResults:
    """Result objects are truthy exactly on success."""

    def test_store_result(self):
        assert StoreResult.ok()
        failed = StoreResult.fail(ErrorKind.PERMISSION_DENIED, "nope")
        assert not failed
        assert failed.error == ErrorKind.PERMISSION_DENIED

    def test_mutation_result(self):
        key = ConfigKey.parse(r"HKCU\A")
        assert MutationResult(True, key, "X")
        assert not MutationResult(False, key, "X", error=ErrorKind.INVALID_TYPE)
