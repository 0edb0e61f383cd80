"""
Metadata cascade resolver.

Merge order for one target (an object, or a template nested inside one):
  1. reserved taxonomy labels (authoritative)
  2. cluster-wide overlay
  3. scope overlay (instance set, backup repository or proxy), wins over 2

Labels and annotations are resolved independently. Overlay keys that collide
with a reserved taxonomy key are dropped, never applied.
"""
import logging
from typing import NamedTuple, Optional

from pgcluster_operator.models import Metadata
from pgcluster_operator.naming import Taxonomy

logger = logging.getLogger("pgcluster.metadata")


class ResolvedMetadata(NamedTuple):
    labels: dict
    annotations: dict


def resolve(
    taxonomy: Taxonomy,
    reserved: dict,
    cluster_overlay: Optional[Metadata] = None,
    scope_overlay: Optional[Metadata] = None,
) -> ResolvedMetadata:
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}

    for overlay in (cluster_overlay, scope_overlay):
        if overlay is None:
            continue
        labels.update(_without_reserved(taxonomy, overlay.labels))
        annotations.update(overlay.annotations)

    labels.update(reserved)
    return ResolvedMetadata(labels=labels, annotations=annotations)


def _without_reserved(taxonomy: Taxonomy, overlay: dict) -> dict:
    kept = {}
    for key, value in overlay.items():
        if key in taxonomy.reserved_keys:
            logger.warning(f"Ignoring overlay label {key}={value}: key is reserved")
            continue
        kept[key] = value
    return kept
