"""
mnemos BM25 -- tokenizers and a persisted, incrementally-maintained BM25 index.

Each corpus (memories / docs / code) has its own partition of the lexical
tables: per-document lengths, per-term postings with term frequency, per-term
document frequency and collection totals. Inserting or removing a document
updates those rows in place inside the caller's transaction; nothing is
recomputed at query time except the scores themselves.

Tokenizers:
- tokenize_code(): identifier aware (camelCase, snake_case, paths, digits),
  also keeps whole compound identifiers so exact names still match.
- tokenize_docs(): natural language, strips markdown, keeps words longer than
  two characters plus a light Porter-style stem.
"""

import logging
import math
import re
import sqlite3
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger("mnemos.bm25")

DEFAULT_K1 = 1.3
DEFAULT_B = 0.75

LEXICAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS lexical_docs (
    corpus TEXT NOT NULL,
    doc_key TEXT NOT NULL,
    length INTEGER NOT NULL,
    PRIMARY KEY (corpus, doc_key)
);
CREATE TABLE IF NOT EXISTS lexical_postings (
    corpus TEXT NOT NULL,
    term TEXT NOT NULL,
    doc_key TEXT NOT NULL,
    tf INTEGER NOT NULL,
    PRIMARY KEY (corpus, term, doc_key)
);
CREATE INDEX IF NOT EXISTS idx_lexical_postings_doc ON lexical_postings(corpus, doc_key);
CREATE TABLE IF NOT EXISTS lexical_terms (
    corpus TEXT NOT NULL,
    term TEXT NOT NULL,
    df INTEGER NOT NULL,
    PRIMARY KEY (corpus, term)
);
CREATE TABLE IF NOT EXISTS lexical_stats (
    corpus TEXT PRIMARY KEY,
    doc_count INTEGER NOT NULL DEFAULT 0,
    total_length INTEGER NOT NULL DEFAULT 0
);
"""

# ---------------------------------------------------------------------------
# Tokenizers
# ---------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"([a-z])([A-Z])")
_ACRONYM_RE = re.compile(r"([A-Z]+)([A-Z][a-z])")
_SEPARATORS_RE = re.compile(r"[_\-./\\:@]+")
_ALPHA_DIGIT_RE = re.compile(r"([a-zA-Z])(\d)")
_DIGIT_ALPHA_RE = re.compile(r"(\d)([a-zA-Z])")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9\s]")
_IDENTIFIER_SPLIT_RE = re.compile(r"[^a-zA-Z0-9_]+")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`]+`")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_MARKDOWN_RE = re.compile(r"[#*_~>|]")


def _split_identifier(text: str) -> List[str]:
    processed = _CAMEL_RE.sub(r"\1 \2", text)
    processed = _ACRONYM_RE.sub(r"\1 \2", processed)
    processed = _SEPARATORS_RE.sub(" ", processed)
    processed = _ALPHA_DIGIT_RE.sub(r"\1 \2", processed)
    processed = _DIGIT_ALPHA_RE.sub(r"\1 \2", processed)
    processed = _NON_ALNUM_RE.sub(" ", processed)
    return processed.lower().split()


def tokenize_code(text: str) -> List[str]:
    """Identifier-aware tokenizer. Repeated tokens are kept (they carry tf).

    ``getUserName`` yields ``get``, ``user``, ``name`` and ``getusername``.
    """
    tokens = _split_identifier(text)
    for original in _IDENTIFIER_SPLIT_RE.split(text):
        if len(original) <= 1:
            continue
        if len(_split_identifier(original)) > 1:
            tokens.append(original.lower())
    return tokens


_STEP2_SUFFIXES = (
    ("ational", "ate"),
    ("tional", "tion"),
    ("ization", "ize"),
    ("ation", "ate"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("ement", "e"),
    ("ment", ""),
    ("ness", ""),
    ("able", ""),
    ("ible", ""),
    ("ful", ""),
    ("less", ""),
    ("ive", ""),
    ("ize", ""),
    ("ise", ""),
    ("ly", ""),
    ("er", ""),
    ("or", ""),
)
_VOWEL_RE = re.compile(r"[aeiou]")


def stem(word: str) -> str:
    """Simplified Porter stemmer: plurals, -ed/-ing and common suffixes."""
    if len(word) < 3:
        return word
    w = word.lower()

    if w.endswith("sses"):
        w = w[:-2]
    elif w.endswith("ies"):
        w = w[:-3] + "y"
    elif w.endswith("ss"):
        pass
    elif w.endswith("s"):
        w = w[:-1]

    if w.endswith("eed"):
        if len(w) > 4:
            w = w[:-1]
    elif w.endswith("ed"):
        if _VOWEL_RE.search(w[:-2]):
            w = w[:-2]
    elif w.endswith("ing"):
        if _VOWEL_RE.search(w[:-3]):
            w = w[:-3]

    for suffix, replacement in _STEP2_SUFFIXES:
        if w.endswith(suffix) and len(w) - len(suffix) >= 2:
            w = w[: -len(suffix)] + replacement
            break
    return w


def tokenize_docs(text: str) -> List[str]:
    """Natural-language tokenizer: each word plus its stem when they differ."""
    processed = _CODE_BLOCK_RE.sub(" ", text)
    processed = _INLINE_CODE_RE.sub(" ", processed)
    processed = _LINK_RE.sub(r"\1", processed)
    processed = _MARKDOWN_RE.sub(" ", processed)
    processed = _NON_ALNUM_RE.sub(" ", processed)

    tokens: List[str] = []
    for word in processed.lower().split():
        if len(word) <= 2:
            continue
        tokens.append(word)
        stemmed = stem(word)
        if stemmed != word:
            tokens.append(stemmed)
    return tokens


def tokenizer_for(corpus: str):
    """Code gets the identifier tokenizer; memories and docs get the docs one."""
    return tokenize_code if corpus == "code" else tokenize_docs


def is_identifier_query(query: str) -> bool:
    """True for single compound identifiers like ``getUserName`` or ``MAX_SIZE``."""
    query = query.strip()
    if not _IDENTIFIER_RE.match(query):
        return False
    return len(_split_identifier(query)) > 1 or "_" in query


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def idf(df: int, n_docs: int) -> float:
    """BM25 IDF with the +1 smoothing that keeps it non-negative."""
    return math.log((n_docs - df + 0.5) / (df + 0.5) + 1.0)


def term_score(
    tf: int,
    df: int,
    n_docs: int,
    doc_length: int,
    avg_doc_length: float,
    k1: float = DEFAULT_K1,
    b: float = DEFAULT_B,
) -> float:
    """Contribution of one query term to one document's BM25 score."""
    if tf <= 0 or n_docs <= 0:
        return 0.0
    avgdl = avg_doc_length if avg_doc_length > 0 else 1.0
    numerator = tf * (k1 + 1.0)
    denominator = tf + k1 * (1.0 - b + b * doc_length / avgdl)
    return idf(df, n_docs) * numerator / denominator


class LexicalIndex:
    """BM25 over one corpus partition of the lexical tables.

    Methods that write never commit; the owning store commits them together
    with the row they describe so index and content cannot drift apart.
    """

    def __init__(self, conn: sqlite3.Connection, corpus: str, k1: float = DEFAULT_K1, b: float = DEFAULT_B):
        self._conn = conn
        self.corpus = corpus
        self.k1 = k1
        self.b = b
        self.tokenize = tokenizer_for(corpus)

    # -- maintenance ---------------------------------------------------

    def add(self, doc_key: str, text: str) -> int:
        """Index a document. Re-adding an existing key replaces it."""
        self.remove(doc_key)
        counts = Counter(self.tokenize(text))
        length = sum(counts.values())
        c = self._conn
        c.execute(
            "INSERT INTO lexical_docs (corpus, doc_key, length) VALUES (?, ?, ?)",
            (self.corpus, doc_key, length),
        )
        c.executemany(
            "INSERT INTO lexical_postings (corpus, term, doc_key, tf) VALUES (?, ?, ?, ?)",
            [(self.corpus, term, doc_key, tf) for term, tf in counts.items()],
        )
        c.executemany(
            """INSERT INTO lexical_terms (corpus, term, df) VALUES (?, ?, 1)
               ON CONFLICT(corpus, term) DO UPDATE SET df = df + 1""",
            [(self.corpus, term) for term in counts],
        )
        c.execute(
            """INSERT INTO lexical_stats (corpus, doc_count, total_length) VALUES (?, 1, ?)
               ON CONFLICT(corpus) DO UPDATE SET doc_count = doc_count + 1,
                                                 total_length = total_length + excluded.total_length""",
            (self.corpus, length),
        )
        return length

    def remove(self, doc_key: str) -> bool:
        """Drop a document's postings and roll back its frequency contributions."""
        c = self._conn
        row = c.execute(
            "SELECT length FROM lexical_docs WHERE corpus = ? AND doc_key = ?",
            (self.corpus, doc_key),
        ).fetchone()
        if row is None:
            return False
        terms = [
            r[0]
            for r in c.execute(
                "SELECT term FROM lexical_postings WHERE corpus = ? AND doc_key = ?",
                (self.corpus, doc_key),
            ).fetchall()
        ]
        c.executemany(
            "UPDATE lexical_terms SET df = df - 1 WHERE corpus = ? AND term = ?",
            [(self.corpus, t) for t in terms],
        )
        c.execute("DELETE FROM lexical_terms WHERE corpus = ? AND df <= 0", (self.corpus,))
        c.execute("DELETE FROM lexical_postings WHERE corpus = ? AND doc_key = ?", (self.corpus, doc_key))
        c.execute("DELETE FROM lexical_docs WHERE corpus = ? AND doc_key = ?", (self.corpus, doc_key))
        c.execute(
            """UPDATE lexical_stats SET doc_count = MAX(doc_count - 1, 0),
                                        total_length = MAX(total_length - ?, 0)
               WHERE corpus = ?""",
            (row[0], self.corpus),
        )
        return True

    def clear(self) -> None:
        for table in ("lexical_postings", "lexical_terms", "lexical_docs", "lexical_stats"):
            self._conn.execute(f"DELETE FROM {table} WHERE corpus = ?", (self.corpus,))

    def rebuild(self, documents: Iterable[Tuple[str, str]]) -> int:
        """Recompute the partition from scratch. Explicit operation only."""
        self.clear()
        count = 0
        for doc_key, text in documents:
            self.add(doc_key, text)
            count += 1
        logger.info("Rebuilt %s lexical index: %d documents", self.corpus, count)
        return count

    # -- reads ---------------------------------------------------------

    def stats(self) -> Tuple[int, float]:
        """Return (document count, average document length)."""
        row = self._conn.execute(
            "SELECT doc_count, total_length FROM lexical_stats WHERE corpus = ?",
            (self.corpus,),
        ).fetchone()
        if not row or not row[0]:
            return 0, 0.0
        return row[0], row[1] / row[0]

    def contains(self, doc_key: str) -> bool:
        return (
            self._conn.execute(
                "SELECT 1 FROM lexical_docs WHERE corpus = ? AND doc_key = ?",
                (self.corpus, doc_key),
            ).fetchone()
            is not None
        )

    def _query_terms(self, query_tokens: Sequence[str]) -> Dict[str, int]:
        unique = list(dict.fromkeys(query_tokens))
        if not unique:
            return {}
        placeholders = ",".join("?" for _ in unique)
        rows = self._conn.execute(
            f"SELECT term, df FROM lexical_terms WHERE corpus = ? AND term IN ({placeholders})",
            (self.corpus, *unique),
        ).fetchall()
        return {term: df for term, df in rows}

    def search(self, query_tokens: Sequence[str], limit: Optional[int] = None) -> List[Tuple[str, float]]:
        """Score every document containing at least one query term."""
        n_docs, avgdl = self.stats()
        if n_docs == 0:
            return []
        term_df = self._query_terms(query_tokens)
        scores: Dict[str, float] = {}
        for term, df in term_df.items():
            rows = self._conn.execute(
                """SELECT p.doc_key, p.tf, d.length
                   FROM lexical_postings p
                   JOIN lexical_docs d ON d.corpus = p.corpus AND d.doc_key = p.doc_key
                   WHERE p.corpus = ? AND p.term = ?""",
                (self.corpus, term),
            ).fetchall()
            for doc_key, tf, length in rows:
                scores[doc_key] = scores.get(doc_key, 0.0) + term_score(
                    tf, df, n_docs, length, avgdl, self.k1, self.b
                )
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:limit] if limit is not None else ranked

    def score(self, query_tokens: Sequence[str], doc_key: str) -> float:
        """BM25 score of a single document for the query."""
        return self.score_many(query_tokens, [doc_key]).get(doc_key, 0.0)

    def score_many(self, query_tokens: Sequence[str], doc_keys: Sequence[str]) -> Dict[str, float]:
        """BM25 scores for a fixed set of documents (0.0 when nothing matches)."""
        result = {key: 0.0 for key in doc_keys}
        n_docs, avgdl = self.stats()
        if n_docs == 0 or not doc_keys:
            return result
        term_df = self._query_terms(query_tokens)
        if not term_df:
            return result
        key_list = list(result)
        placeholders = ",".join("?" for _ in key_list)
        for term, df in term_df.items():
            rows = self._conn.execute(
                f"""SELECT p.doc_key, p.tf, d.length
                    FROM lexical_postings p
                    JOIN lexical_docs d ON d.corpus = p.corpus AND d.doc_key = p.doc_key
                    WHERE p.corpus = ? AND p.term = ? AND p.doc_key IN ({placeholders})""",
                (self.corpus, term, *key_list),
            ).fetchall()
            for doc_key, tf, length in rows:
                result[doc_key] += term_score(tf, df, n_docs, length, avgdl, self.k1, self.b)
        return result
