from __future__ import annotations

from exec_runtime.safety.shell_tokens import split_segments, tokenize


def test_tokenize_honors_quotes_and_escapes() -> None:
    assert tokenize('a "b c" d\\ e') == ["a", "b c", "d e"]


def test_tokenize_backslash_is_literal_inside_single_quotes() -> None:
    assert tokenize("echo 'a\\b' \"c\\\"d\"") == ["echo", "a\\b", 'c"d']


def test_tokenize_collapses_whitespace_and_drops_empty_tokens() -> None:
    assert tokenize("  rm   -rf\t x  ") == ["rm", "-rf", "x"]
    assert tokenize("") == []


def test_split_segments_on_unquoted_operators() -> None:
    assert split_segments("echo a; rm -rf x && ls | wc -l & sleep 1 || true") == [
        "echo a",
        "rm -rf x",
        "ls",
        "wc -l",
        "sleep 1",
        "true",
    ]


def test_split_segments_keeps_quoted_and_escaped_operators() -> None:
    assert split_segments(r"bash -lc 'rm -rf a; ls' ; echo \; done") == [
        "bash -lc 'rm -rf a; ls'",
        r"echo \; done",
    ]


def test_split_segments_drops_empty_segments() -> None:
    assert split_segments(";; echo hi ;") == ["echo hi"]


def test_split_segments_treats_unquoted_newline_as_separator() -> None:
    assert split_segments("echo hi\nrm -rf .\n\nls") == ["echo hi", "rm -rf .", "ls"]
    assert split_segments("echo 'a\nb'") == ["echo 'a\nb'"]
