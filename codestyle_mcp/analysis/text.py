"""Tokenization and query parsing for the template search index."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass, field

# Characters with meaning in the classic query syntax; their presence switches
# the parser into literal mode.
QUERY_METACHARS = re.compile(r'[+\-&|!(){}\[\]^"~*?:\\/]')

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)
_PATH_SPLIT_RE = re.compile(r"[/\\]")
_OPERATORS = {"AND", "OR", "NOT"}


def _is_cjk(ch: str) -> bool:
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0xF900 <= code <= 0xFAFF
        or 0x3040 <= code <= 0x30FF
        or 0xAC00 <= code <= 0xD7AF
    )


def _split_scripts(word: str) -> Iterable[tuple[bool, str]]:
    """Yield (is_cjk, run) segments of a word."""
    run: list[str] = []
    run_cjk = False
    for ch in word:
        cjk = _is_cjk(ch)
        if run and cjk != run_cjk:
            yield run_cjk, "".join(run)
            run = []
        run_cjk = cjk
        run.append(ch)
    if run:
        yield run_cjk, "".join(run)


def tokenize(text: str | None) -> list[str]:
    """Split text into lower-cased index terms.

    Latin/digit runs become single terms. CJK runs are emitted as unigrams
    followed by bigrams so that both single-character and phrase queries match.
    """
    if not text:
        return []
    normalized = unicodedata.normalize("NFKC", text).lower()
    tokens: list[str] = []
    for match in _WORD_RE.finditer(normalized):
        for cjk, run in _split_scripts(match.group(0)):
            if not cjk:
                tokens.append(run)
                continue
            tokens.extend(run)
            tokens.extend(run[i : i + 2] for i in range(len(run) - 1))
    return tokens


def extract_path_keywords(paths: Iterable[str | None]) -> list[str]:
    """Unique directory segments across ``paths`` in first-seen order.

    ``/backend/src/main`` contributes ``backend``, ``src`` and ``main``.
    """
    seen: dict[str, None] = {}
    for path in paths:
        if not path:
            continue
        for seg in _PATH_SPLIT_RE.split(path):
            if seg and seg != ".":
                seen.setdefault(seg, None)
    return list(seen)


@dataclass
class ParsedQuery:
    should: list[str] = field(default_factory=list)
    must: list[str] = field(default_factory=list)
    must_not: list[str] = field(default_factory=list)

    @property
    def positive_terms(self) -> list[str]:
        return list(dict.fromkeys(self.should + self.must))

    def is_empty(self) -> bool:
        return not (self.should or self.must)


def needs_escaping(text: str) -> bool:
    return bool(QUERY_METACHARS.search(text))


def parse_query(text: str) -> ParsedQuery:
    """Parse free text into optional, required and prohibited terms.

    Terms combine with OR by default. When the input carries query
    metacharacters it is taken literally and every token is optional.
    Otherwise the upper-case operators ``AND`` and ``NOT`` are honoured.
    """
    if needs_escaping(text):
        return ParsedQuery(should=list(dict.fromkeys(tokenize(text))))

    clauses: list[tuple[str, list[str]]] = []
    pending_and = False
    pending_not = False
    for word in text.split():
        if word in _OPERATORS:
            if word == "AND":
                pending_and = True
            elif word == "NOT":
                pending_not = True
            continue
        terms = tokenize(word)
        if not terms:
            continue
        if pending_not:
            clauses.append(("must_not", terms))
        elif pending_and:
            if clauses and clauses[-1][0] == "should":
                clauses[-1] = ("must", clauses[-1][1])
            clauses.append(("must", terms))
        else:
            clauses.append(("should", terms))
        pending_and = False
        pending_not = False

    parsed = ParsedQuery()
    for kind, terms in clauses:
        getattr(parsed, kind).extend(terms)
    for name in ("should", "must", "must_not"):
        setattr(parsed, name, list(dict.fromkeys(getattr(parsed, name))))
    # A term that is both required and optional is simply required.
    parsed.should = [t for t in parsed.should if t not in parsed.must]
    return parsed


def split_exact_query(text: str) -> tuple[str, str] | None:
    """Return ``(group_id, artifact_id)`` for ``group/artifact`` queries.

    The text is split on the first ``/``. None when either half is blank.
    """
    if "/" not in text:
        return None
    group_id, _, artifact_id = text.strip().partition("/")
    group_id, artifact_id = group_id.strip(), artifact_id.strip()
    if not group_id or not artifact_id:
        return None
    return group_id, artifact_id
