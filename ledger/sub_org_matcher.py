"""
Sub-organization name matching.

Resolves a free-text sub-organization label (e.g. the "Sub-Organization"
column of a bank export) against the catalog, in priority order:
  1. Name exact match (case-insensitive)
  2. Fuzzy name match (using rapidfuzz)
"""
import logging
from typing import Optional, Sequence

from rapidfuzz import fuzz

from models.sub_organization import SubOrganization

logger = logging.getLogger(__name__)

# Minimum fuzzy score (0-100) to accept a name match
FUZZY_THRESHOLD = 80


class SubOrgMatcher:
    """Matches labels against a list of sub-organizations."""

    def __init__(self, sub_orgs: Sequence[SubOrganization], threshold: int = FUZZY_THRESHOLD):
        self.sub_orgs = list(sub_orgs)
        self.threshold = threshold

    def match(self, label: Optional[str]) -> Optional[SubOrganization]:
        """Return the best matching sub-organization, or None."""
        name = (label or "").strip().lower()
        if not name or not self.sub_orgs:
            return None

        for org in self.sub_orgs:
            if org.name.lower() == name:
                return org

        best_score = 0.0
        best_org: Optional[SubOrganization] = None
        for org in self.sub_orgs:
            score = fuzz.token_sort_ratio(name, org.name.lower())
            if score > best_score:
                best_score = score
                best_org = org

        if best_org and best_score >= self.threshold:
            logger.info(
                "Sub-organization fuzzy matched: '%s' -> '%s' (score=%d)",
                label, best_org.name, best_score,
            )
            return best_org

        logger.debug("Best fuzzy match score for '%s' was %d (threshold=%d)",
                     label, best_score, self.threshold)
        return None
