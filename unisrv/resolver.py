"""
Resource reference resolution.

Maps a user supplied reference (full identifier, identifier prefix, or exact
name) to the unique identifier of a resource.
"""

import logging
from typing import Iterable, List

from .exceptions import NotFound, AmbiguousReference
from .models import ResourceKind, ResourceReference, ResourceSummary

logger = logging.getLogger(__name__)

ACTIVE_INSTANCE_STATE = "active"


def match_candidates(reference: str, candidates: Iterable[ResourceSummary], entity_name: str) -> str:
    """
    Pick the unique candidate matching a partial reference.

    Identifier prefixes are tried first; exact, case-sensitive names only when
    no identifier starts with the reference.

    Args:
        reference: User supplied string
        candidates: Resources to match against
        entity_name: Name used in error messages, e.g. "instance"

    Returns:
        Identifier of the matching resource

    Raises:
        NotFound: nothing matched
        AmbiguousReference: more than one resource matched
    """
    candidates = list(candidates)

    matches: List[ResourceSummary] = [c for c in candidates if c.id.startswith(reference)]
    how = "prefix"
    if not matches:
        matches = [c for c in candidates if c.name is not None and c.name == reference]
        how = "name"

    if len(matches) == 1:
        logger.debug(f"Resolved {entity_name} '{reference}' by {how} to {matches[0].id}")
        return matches[0].id

    if not matches:
        raise NotFound(
            f"No {entity_name} found with name or identifier '{reference}'",
            kind=entity_name,
            reference=reference
        )

    raise AmbiguousReference(
        f"Ambiguous: {len(matches)} {entity_name}s match {how} '{reference}'. Be more specific.",
        match_count=len(matches),
        kind=entity_name,
        reference=reference
    )


class ResourceResolver:
    """Resolves references against the resources the API currently lists."""

    def __init__(self, api_client):
        self.api_client = api_client

    async def resolve(self, kind: ResourceKind, reference: str) -> str:
        """
        Resolve a reference to a full identifier.

        A full identifier is returned without contacting the server.
        """
        parsed = ResourceReference.classify(reference)
        if parsed.is_full_identifier:
            return parsed.raw

        summaries = await self.api_client.list_summaries(kind)
        if kind == ResourceKind.INSTANCE:
            summaries = [s for s in summaries if s.status == ACTIVE_INSTANCE_STATE]

        return match_candidates(parsed.raw, summaries, kind.value)
