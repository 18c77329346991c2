"""Tests for composite resource identifiers."""

import pytest

from rivestack.identifiers import (
    IdentifierError,
    format_id,
    parse_cluster_id,
    parse_database_id,
    parse_extension_id,
    parse_grant_id,
    parse_user_id,
)


class TestFormatId:
    """Tests for building identifiers."""

    def test_bare_cluster(self) -> None:
        """Test that a cluster id alone formats as the number."""
        assert format_id(42) == "42"

    def test_composite(self) -> None:
        """Test slash-joined composite identifiers."""
        assert format_id(42, "app") == "42/app"
        assert format_id(42, "vector", "appdb") == "42/vector/appdb"


class TestParseClusterId:
    """Tests for bare cluster identifiers."""

    @pytest.mark.parametrize("raw,expected", [("42", 42), (" 7 ", 7), (3, 3)])
    def test_valid(self, raw: str | int, expected: int) -> None:
        """Test accepted cluster ids."""
        assert parse_cluster_id(raw) == expected

    @pytest.mark.parametrize(
        "raw", ["", "abc", "0", "-1", "4.2", "42/app", "\u00b2", "\u0664\u0662", 0, -5, True]
    )
    def test_invalid(self, raw: str | int) -> None:
        """Test that non-positive or non-numeric ids are rejected."""
        with pytest.raises(IdentifierError) as exc_info:
            parse_cluster_id(raw)

        assert "positive integer" in str(exc_info.value)


class TestParseComposite:
    """Tests for composite identifiers of sub-resources."""

    def test_user(self) -> None:
        """Test parsing a user identifier."""
        assert parse_user_id("42/app") == (42, "app")

    def test_database(self) -> None:
        """Test parsing a database identifier."""
        assert parse_database_id("42/analytics") == (42, "analytics")

    def test_extension(self) -> None:
        """Test parsing an extension identifier."""
        assert parse_extension_id("42/vector/appdb") == (42, "vector", "appdb")

    def test_grant(self) -> None:
        """Test parsing a grant identifier."""
        assert parse_grant_id("42/app/appdb") == (42, "app", "appdb")

    @pytest.mark.parametrize("raw", ["42", "42/app/extra", "42/", "/app", "", "42//x"])
    def test_wrong_segments_rejected(self, raw: str) -> None:
        """Test that segment count and emptiness are enforced."""
        with pytest.raises(IdentifierError) as exc_info:
            parse_user_id(raw)

        assert "cluster_id/username" in str(exc_info.value)

    def test_extension_requires_database(self) -> None:
        """Test that a two-part extension id is not silently accepted."""
        with pytest.raises(IdentifierError) as exc_info:
            parse_extension_id("42/vector")

        assert "cluster_id/extension/database" in str(exc_info.value)

    def test_non_numeric_cluster_rejected(self) -> None:
        """Test that the cluster segment must be a positive integer."""
        with pytest.raises(IdentifierError) as exc_info:
            parse_grant_id("abc/app/appdb")

        assert "abc/app/appdb" in str(exc_info.value)
        assert "positive integer" in str(exc_info.value)

    @pytest.mark.parametrize("raw", ["\u00b2/app", "\u0664\u0662/app"])
    def test_non_ascii_digits_rejected(self, raw: str) -> None:
        """Test that Unicode digits in the cluster segment are a parse error."""
        with pytest.raises(IdentifierError) as exc_info:
            parse_user_id(raw)

        assert "positive integer" in str(exc_info.value)

    def test_zero_cluster_rejected(self) -> None:
        """Test that cluster id zero is rejected."""
        with pytest.raises(IdentifierError):
            parse_database_id("0/appdb")
