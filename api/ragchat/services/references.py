"""
Reference aggregation.

Groups retrieval hits by their source document so the client can show one
entry per document with the matching passages underneath.
"""

from ragchat.models.threads import Reference, ReferenceHit, RetrievalResult


def source_filename(source_id: str) -> str:
    """Final path segment of a source identifier."""
    return source_id.split("/")[-1]


def aggregate_references(results: list[RetrievalResult]) -> list[Reference]:
    """
    Group retrieval results by ``source_id``.

    Groups appear in first-seen order and hits keep their encounter order
    within a group, so the output is deterministic for a given input order.
    """
    groups: dict[str, list[ReferenceHit]] = {}
    for result in results:
        hit = ReferenceHit(text=result.text, page=result.page, score=result.score)
        groups.setdefault(result.source_id, []).append(hit)

    return [
        Reference(filename=source_filename(source_id), source_path=source_id, hits=hits)
        for source_id, hits in groups.items()
    ]
