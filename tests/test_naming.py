"""Tests for device name normalization."""

from __future__ import annotations

import re

import pytest

from tailsync.naming import FALLBACK_NAME, MAX_NAME_LENGTH, normalize

DNS_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


class TestNormalize:
    """Tests for normalize()."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("laptop.tail1234.ts.net", "laptop-tail1234-ts-net"),
            ("My_Device", "my-device"),
            ("--edge--node--", "edge-node"),
            ("a..b", "a-b"),
            ("UPPER", "upper"),
            ("k8s-prod-01", "k8s-prod-01"),
        ],
    )
    def test_examples(self, raw: str, expected: str) -> None:
        assert normalize(raw) == expected

    @pytest.mark.parametrize("raw", ["", "---", "...", "@@@"])
    def test_empty_result_falls_back(self, raw: str) -> None:
        assert normalize(raw) == FALLBACK_NAME

    def test_truncates_to_label_length(self) -> None:
        result = normalize("a" * 100)
        assert len(result) == MAX_NAME_LENGTH

    def test_truncation_never_leaves_trailing_dash(self) -> None:
        # Character 63 is a dash after truncation
        raw = "a" * 62 + ".b"
        result = normalize(raw)
        assert not result.endswith("-")
        assert result == "a" * 62

    @pytest.mark.parametrize(
        "raw",
        [
            "laptop.tail1234.ts.net",
            "Ünïcödé-hôst",
            "x" * 80 + "-" + "y" * 10,
            "_leading_and_trailing_",
            "",
        ],
    )
    def test_result_is_dns_label_and_idempotent(self, raw: str) -> None:
        result = normalize(raw)
        assert DNS_LABEL.match(result)
        assert "--" not in result
        assert len(result) <= MAX_NAME_LENGTH
        assert normalize(result) == result
