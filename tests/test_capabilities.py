"""Tests for the dialect capability table and the canonical type vocabulary."""

import pytest
from pydantic import ValidationError

from db_bridge.errors import BridgeError, UnsupportedDialectError
from db_bridge.schema.capabilities import Dialect, get_capabilities, resolve_dialect
from db_bridge.schema.types import CanonicalType, is_compatible, split_type_params, type_family


# ==================================================================
# Test Group 1: Dialect resolution
# ==================================================================


class TestResolveDialect:
    """Verify dialect names and aliases resolve to the enum."""

    def test_enum_member_passes_through(self) -> None:
        assert resolve_dialect(Dialect.SQLITE) is Dialect.SQLITE

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("sqlite", Dialect.SQLITE),
            ("SQLite3", Dialect.SQLITE),
            ("sqlite+aiosqlite", Dialect.SQLITE),
            ("postgres", Dialect.POSTGRESQL),
            ("pg", Dialect.POSTGRESQL),
            (" postgresql+asyncpg ", Dialect.POSTGRESQL),
        ],
    )
    def test_aliases(self, name, expected) -> None:
        """Aliases are matched case-insensitively, surrounding blanks ignored."""
        assert resolve_dialect(name) is expected

    def test_unknown_dialect_raises(self) -> None:
        with pytest.raises(UnsupportedDialectError, match="mysql"):
            resolve_dialect("mysql")

    def test_unsupported_dialect_is_bridge_error(self) -> None:
        """Callers can catch the whole family through BridgeError."""
        with pytest.raises(BridgeError):
            get_capabilities("oracle")


# ==================================================================
# Test Group 2: Capability flags
# ==================================================================


class TestCapabilities:
    """Verify the flags the planner and executor branch on."""

    def test_sqlite_alteration_limits(self) -> None:
        caps = get_capabilities("sqlite")
        assert caps.supports_alter_add_constraint is False
        assert caps.supports_alter_column_type is False
        assert caps.supports_alter_column_default is False
        assert caps.supports_drop_not_null is False
        assert caps.allows_forward_references is True

    def test_sqlite_single_writer(self) -> None:
        caps = get_capabilities(Dialect.SQLITE)
        assert caps.supports_concurrent_writers is False
        assert caps.lock_strategy == "exclusive"
        assert caps.row_identifier == "rowid"

    def test_sqlite_type_support(self) -> None:
        caps = get_capabilities(Dialect.SQLITE)
        assert not caps.supports_arrays
        assert not caps.supports_json
        assert not caps.supports_materialized_views
        assert not caps.strict_typing

    def test_postgres_flags(self) -> None:
        caps = get_capabilities(Dialect.POSTGRESQL)
        assert caps.supports_arrays
        assert caps.supports_deferred_constraints
        assert caps.supports_alter_column_default
        assert caps.supports_materialized_views
        assert caps.allows_forward_references is False
        assert caps.lock_strategy == "row"
        assert caps.row_identifier == "ctid"

    def test_lookup_returns_same_descriptor(self) -> None:
        """Aliases resolve to one shared descriptor."""
        assert get_capabilities("postgres") is get_capabilities(Dialect.POSTGRESQL)

    def test_descriptor_is_frozen(self) -> None:
        caps = get_capabilities(Dialect.SQLITE)
        with pytest.raises(ValidationError):
            caps.supports_arrays = True


# ==================================================================
# Test Group 3: Canonical types
# ==================================================================


class TestCanonicalTypes:
    """Verify compatibility families and type-parameter parsing."""

    def test_integer_widening_is_compatible(self) -> None:
        assert is_compatible(CanonicalType.INTEGER, CanonicalType.BIGINT)

    def test_text_to_integer_is_not_compatible(self) -> None:
        assert not is_compatible(CanonicalType.TEXT, CanonicalType.INTEGER)

    def test_json_travels_as_string(self) -> None:
        assert type_family(CanonicalType.JSON) == type_family(CanonicalType.TEXT)

    def test_every_type_has_a_family(self) -> None:
        for type_ in CanonicalType:
            assert type_family(type_)

    @pytest.mark.parametrize(
        "native, expected",
        [
            ("TEXT", ("text", [])),
            ("VARCHAR(255)", ("varchar", [255])),
            ("NUMERIC(10, 2)", ("numeric", [10, 2])),
            ("character varying(40)", ("character varying", [40])),
            ("integer[]", ("integer[]", [])),
            ("numeric(10,2)[]", ("numeric[]", [10, 2])),
            ("timestamp(3) with time zone", ("timestamp with time zone", [3])),
            ("", ("", [])),
        ],
    )
    def test_split_type_params(self, native, expected) -> None:
        assert split_type_params(native) == expected
