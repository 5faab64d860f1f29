"""In-process cache of document fingerprints.

Entries are keyed by (document_id, content_hash), so a fingerprint goes stale
as soon as the document's text changes.
Failure fingerprints are never stored.
"""

from app.core.logging import get_logger
from app.core.schemas_relationships import DocumentFingerprint

logger = get_logger(__name__)


class FingerprintCache:
    """Fingerprints keyed by document and content hash. Last writer wins."""

    def __init__(self, max_entries: int = 2048):
        self.max_entries = max_entries
        self._entries: dict[tuple[str, str], DocumentFingerprint] = {}
        self.hits = 0
        self.misses = 0

    def get(self, document_id: str, content_hash: str) -> DocumentFingerprint | None:
        fingerprint = self._entries.get((str(document_id), content_hash))
        if fingerprint is None:
            self.misses += 1
        else:
            self.hits += 1
        return fingerprint

    def put(self, fingerprint: DocumentFingerprint) -> None:
        if fingerprint.analysis_failed:
            return

        key = (fingerprint.document_id, fingerprint.content_hash)

        # Older content versions of the same document are dead weight
        for stale in [k for k in self._entries if k[0] == key[0] and k != key]:
            del self._entries[stale]

        if key not in self._entries and len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

        self._entries[key] = fingerprint

    def invalidate(self, document_id: str) -> int:
        """Drop every cached version of a document. Returns entries removed."""
        doomed = [k for k in self._entries if k[0] == str(document_id)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cached fingerprint(s) for {document_id}")
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)
