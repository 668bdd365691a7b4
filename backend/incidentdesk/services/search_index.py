"""
search_index.py - Blind index over encrypted text fields.

Ciphertext cannot be searched, so every word of an encrypted searchable
field is stored as HMAC-SHA256(index key, "<field>:<word>"). A query matches
a record only when every query word has a row for that record and field.
Matching is whole-word and case-insensitive; there is no substring match.

The index key is derived from the master key with HKDF and is never the
field encryption key.
"""

import hashlib
import hmac
import re
from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from incidentdesk.core.encryption import FieldCipher
from incidentdesk.models import SearchToken

INDEX_KEY_INFO = b"incidentdesk-search-index"
MAX_TOKENS_PER_FIELD = 512

_WORD = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str | None) -> list[str]:
    """Distinct lower-cased words, in first-seen order."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        seen.setdefault(word, None)
    return list(seen)[:MAX_TOKENS_PER_FIELD]


class SearchIndex:
    def __init__(self, cipher: FieldCipher):
        self._key = cipher.derive_subkey(INDEX_KEY_INFO)

    def token_hash(self, field: str, token: str) -> str:
        return hmac.new(self._key, f"{field}:{token}".encode("utf-8"), hashlib.sha256).hexdigest()

    def index_field(self, db: Session, target_type: str, target_id: str, field: str, text: str | None) -> None:
        """Replace the indexed words of one field. Caller commits."""
        self.remove(db, target_type, target_id, field)
        for token in tokenize(text):
            db.add(
                SearchToken(
                    target_type=target_type,
                    target_id=target_id,
                    field=field,
                    token_hash=self.token_hash(field, token),
                )
            )

    def remove(self, db: Session, target_type: str, target_id: str | Iterable[str], field: str | None = None) -> None:
        target_ids = [target_id] if isinstance(target_id, str) else list(target_id)
        if not target_ids:
            return
        stmt = delete(SearchToken).where(
            SearchToken.target_type == target_type,
            SearchToken.target_id.in_(target_ids),
        )
        if field is not None:
            stmt = stmt.where(SearchToken.field == field)
        db.execute(stmt)

    def matching_ids(self, target_type: str, field: str, query: str):
        """
        Select of target ids holding every word of ``query``, for use inside
        an IN clause. None when the query has no words.
        """
        tokens = tokenize(query)
        if not tokens:
            return None
        hashes = [self.token_hash(field, token) for token in tokens]
        return (
            select(SearchToken.target_id)
            .where(
                SearchToken.target_type == target_type,
                SearchToken.field == field,
                SearchToken.token_hash.in_(hashes),
            )
            .group_by(SearchToken.target_id)
            .having(func.count(func.distinct(SearchToken.token_hash)) == len(hashes))
        )
