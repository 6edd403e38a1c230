"""Per-transaction ingestion components"""

from .category_cache import CategoryCache
from .category_maintenance import CategoryMaintenance
from .category_resolver import CategoryResolver, apply_category_mappings, may_replace_category
from .dedup_engine import DedupEngine, UpsertResult, generate_identifier, normalize_transaction
from .ownership_claimer import OwnershipClaimer

__all__ = [
    "CategoryCache",
    "CategoryMaintenance",
    "CategoryResolver",
    "apply_category_mappings",
    "may_replace_category",
    "DedupEngine",
    "UpsertResult",
    "generate_identifier",
    "normalize_transaction",
    "OwnershipClaimer",
]
