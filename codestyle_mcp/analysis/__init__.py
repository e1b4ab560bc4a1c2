"""Pure text analysis helpers: tokenization, path keywords and query parsing."""

from .text import (QUERY_METACHARS, ParsedQuery, extract_path_keywords,
                   needs_escaping, parse_query, split_exact_query,
                   tokenize)

__all__ = [
    "QUERY_METACHARS",
    "ParsedQuery",
    "extract_path_keywords",
    "needs_escaping",
    "parse_query",
    "split_exact_query",
    "tokenize",
]
