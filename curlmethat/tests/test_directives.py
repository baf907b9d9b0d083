from __future__ import annotations

import pytest

from curlmethat.src.directives import CURL_ANNOTATION, ParseError, parse_directives


def test_annotation_key_is_fixed() -> None:
    assert CURL_ANNOTATION == "x-k8s.io/curl-me-that"


def test_single_directive() -> None:
    assert parse_directives("foo=http://x/1") == {"foo": "http://x/1"}


def test_comma_separated_directives_keep_order() -> None:
    directives = parse_directives("b=http://x/2,a=https://x/1")

    assert list(directives.items()) == [("b", "http://x/2"), ("a", "https://x/1")]


def test_whitespace_and_newline_separated_directives() -> None:
    value = "\n  joke=https://example.com/joke\n  quote=https://example.com/quote , \n"

    assert parse_directives(value) == {
        "joke": "https://example.com/joke",
        "quote": "https://example.com/quote",
    }


def test_only_first_equals_sign_splits_entry() -> None:
    directives = parse_directives("q=https://example.com/search?a=1&b=2")

    assert directives == {"q": "https://example.com/search?a=1&b=2"}


def test_duplicate_key_later_occurrence_wins() -> None:
    directives = parse_directives("foo=http://x/1,bar=http://x/2,foo=http://x/3")

    assert directives == {"foo": "http://x/3", "bar": "http://x/2"}


@pytest.mark.parametrize(
    "value",
    [
        "foo",
        "foo=",
        "=http://x/1",
        "foo=http://x/1,bar",
        "foo=ftp://x/1",
        "foo=http://",
        "foo=not-a-url",
        "fo/o=http://x/1",
        "",
        " , \n",
    ],
)
def test_malformed_values_fail_whole_annotation(value: str) -> None:
    with pytest.raises(ParseError):
        parse_directives(value)


def test_bad_entry_does_not_yield_partial_result() -> None:
    with pytest.raises(ParseError, match="bar"):
        parse_directives("foo=http://x/1,bar")


@pytest.mark.parametrize("key", [".", "..", "..data", "..2024_01_01"])
def test_rejects_keys_reserved_by_kubernetes(key: str) -> None:
    with pytest.raises(ParseError, match="not a valid ConfigMap data key"):
        parse_directives(f"{key}=http://x/1")


@pytest.mark.parametrize("key", [".hidden", "a..b", "config.yaml"])
def test_accepts_dotted_keys(key: str) -> None:
    assert parse_directives(f"{key}=http://x/1") == {key: "http://x/1"}


def test_key_length_limit() -> None:
    assert parse_directives(f"{'k' * 253}=http://x/1")
    with pytest.raises(ParseError, match="exceeds 253"):
        parse_directives(f"{'k' * 254}=http://x/1")


def test_parse_error_is_a_value_error() -> None:
    assert issubclass(ParseError, ValueError)
